from fastapi import APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from typing import Optional

from ..config import Settings, settings
from ..schemas.movie import MovieListResponse, SearchData, SearchQuery, SearchResponse
from ..dependencies import get_cache_service, get_settings
from ..services.cache_service import CacheService
from ..limiter import limiter

router = APIRouter()

@router.get("/api/movies", response_model=SearchResponse)
@limiter.limit(settings.SEARCH_RATE_LIMIT)  # each search may fan out to the provider
async def search_movies(
    request: Request, # Required for limiter
    search: str = Query(..., min_length=1),
    sort: str = "relevance",
    filter: Optional[str] = None,
    genre: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
    year: Optional[int] = None,
    media_type: str = Query("movie", alias="type"),
    service: CacheService = Depends(get_cache_service)
):
    """
    Search movies with filtering, sorting and pagination,
    backfilling the cache from OMDb when local results are thin.
    """
    try:
        query = SearchQuery.from_request(
            search=search,
            sort=sort,
            filter=filter,
            page=page,
            limit=limit,
            year=year,
            media_type=media_type,
            genre=genre,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors())

    result = await service.resolve_search(query)
    return SearchResponse(
        data=SearchData(
            movies=result.records,
            pagination=result.pagination,
            backfill=result.backfill,
        )
    )

@router.get("/api/movies/popular", response_model=MovieListResponse)
async def get_popular_movies(
    limit: Optional[int] = None,
    service: CacheService = Depends(get_cache_service)
):
    """Most accessed cached movies"""
    return MovieListResponse(data=await service.get_popular(limit))

@router.get("/api/movies/{external_id}")
async def get_movie(
    external_id: str,
    service: CacheService = Depends(get_cache_service),
    config: Settings = Depends(get_settings)
):
    """
    Movie details by IMDb id, refreshed from OMDb when expired
    """
    lookup = await service.resolve_by_id(external_id)
    body = {"success": True, "data": lookup.record.model_dump(mode="json")}
    if config.FLAG_STALE_RECORDS:
        body["stale"] = lookup.stale
    return body
