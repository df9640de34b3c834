from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class MediaType(str, Enum):
    MOVIE = "movie"
    SERIES = "series"
    EPISODE = "episode"


class SortKey(str, Enum):
    RELEVANCE = "relevance"
    RATING = "rating"
    YEAR = "year"
    TITLE = "title"
    POPULARITY = "popularity"


class RatingSource(BaseModel):
    source: str
    value: str


class MovieRecord(BaseModel):
    """Canonical cached movie, keyed by the provider's external_id"""
    external_id: str = Field(..., min_length=1, max_length=32)
    title: str
    release_year: Optional[int] = None
    runtime_minutes: Optional[int] = None
    genres: List[str] = []
    director: Optional[str] = None
    writers: List[str] = []
    cast: List[str] = []
    plot: Optional[str] = None
    languages: List[str] = []
    countries: List[str] = []
    rating_sources: List[RatingSource] = []
    aggregate_rating: Optional[float] = None
    media_type: MediaType = MediaType.MOVIE
    rated: Optional[str] = None
    poster_url: Optional[str] = None

    # Cache metadata
    last_fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    search_count: int = 0
    popularity_score: int = 0

    @field_validator("genres")
    @classmethod
    def _unique_genres(cls, value: List[str]) -> List[str]:
        # ordered set: keep first occurrence
        return list(dict.fromkeys(value))


class ProviderReference(BaseModel):
    """Lightweight search hit returned by the provider's title search"""
    external_id: str
    title: str
    year: Optional[int] = None
    media_type: Optional[MediaType] = None


class SearchQuery(BaseModel):
    """Input from the routing layer"""
    text: str = Field(..., min_length=1, max_length=200)
    year: Optional[int] = Field(None, ge=1870, le=2100)
    genre: Optional[str] = None
    media_type: Optional[str] = Field("movie", pattern="^(movie|series|episode|all)$")
    sort: SortKey = SortKey.RELEVANCE
    page: int = Field(1, ge=1)
    limit: Optional[int] = None

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("search text must not be blank")
        return value

    @classmethod
    def from_request(
        cls,
        search: str,
        sort: str = "relevance",
        filter: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        year: Optional[int] = None,
        media_type: Optional[str] = "movie",
        genre: Optional[str] = None,
    ) -> "SearchQuery":
        # legacy clients send the genre as filter=genre:<name>
        if genre is None and filter and filter.startswith("genre:"):
            genre = filter[len("genre:"):].strip() or None
        return cls(
            text=search,
            sort=sort,
            genre=genre,
            page=page,
            limit=limit,
            year=year,
            media_type=media_type,
        )


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_next: bool
    has_prev: bool
    limit: int


class BackfillSummary(BaseModel):
    attempted: bool = False
    requested: int = 0
    stored: int = 0
    failed: int = 0
    provider_error: Optional[str] = None
    provider_reachable: bool = True


class SearchResult(BaseModel):
    records: List[MovieRecord]
    pagination: Pagination
    backfill: BackfillSummary = BackfillSummary()


class MovieLookup(BaseModel):
    record: MovieRecord
    stale: bool = False


class SearchData(BaseModel):
    movies: List[MovieRecord]
    pagination: Pagination
    backfill: BackfillSummary


class SearchResponse(BaseModel):
    """API response for searches"""
    success: bool = True
    data: SearchData


class MovieResponse(BaseModel):
    success: bool = True
    data: MovieRecord


class MovieListResponse(BaseModel):
    success: bool = True
    data: List[MovieRecord]


class SweepResponse(BaseModel):
    success: bool = True
    deleted: int
    message: str
