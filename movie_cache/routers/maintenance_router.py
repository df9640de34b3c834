from fastapi import APIRouter, Depends

from ..schemas.movie import MovieResponse, SweepResponse
from ..dependencies import get_cache_service, get_maintenance_service
from ..services.cache_service import CacheService
from ..services.maintenance_service import MaintenanceService

# Admin routes; authentication is handled in front of this service
router = APIRouter()

@router.post("/api/movies/{external_id}/refresh", response_model=MovieResponse)
async def refresh_movie_cache(
    external_id: str,
    service: CacheService = Depends(get_cache_service)
):
    """Refetch a movie from OMDb regardless of its freshness"""
    return MovieResponse(data=await service.refresh_by_id(external_id))

@router.delete("/api/movies/cache/expired", response_model=SweepResponse)
async def clear_expired_cache(
    service: MaintenanceService = Depends(get_maintenance_service)
):
    """Purge expired cache entries that were not read since expiring"""
    deleted = await service.purge_expired()
    return SweepResponse(deleted=deleted, message=f"Cleared {deleted} expired cache entries")
