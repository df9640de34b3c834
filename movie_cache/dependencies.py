import asyncio
import logging
from typing import Optional

import asyncpg
import httpx
from fastapi import Depends

from .config import settings, Settings
from .repositories.movie_repository import MovieRepository
from .services.cache_service import CacheService
from .services.maintenance_service import MaintenanceService
from .services.omdb_client import OMDbClient

logger = logging.getLogger(__name__)

# Process-wide handles, opened in the app lifespan and closed at shutdown
class AppState:
    pg_pool: Optional[asyncpg.Pool] = None
    http_client: Optional[httpx.AsyncClient] = None
    provider: Optional[OMDbClient] = None
    cache_service: Optional[CacheService] = None
    sweeper: Optional[asyncio.Task] = None

state = AppState()

async def init_resources(config: Settings = settings):
    """Initialize all resources"""
    state.pg_pool = await asyncpg.create_pool(
        config.DATABASE_URL,
        min_size=config.DB_POOL_MIN_SIZE,
        max_size=config.DB_POOL_MAX_SIZE,
        command_timeout=config.DB_COMMAND_TIMEOUT
    )
    movie_repo = MovieRepository(state.pg_pool)
    await movie_repo.ensure_schema()

    state.http_client = httpx.AsyncClient(
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        limits=httpx.Limits(max_connections=config.BACKFILL_MAX_ITEMS * 2),
        headers={"User-Agent": "movie-cache/1.0"},
    )
    state.provider = OMDbClient(
        api_key=config.OMDB_API_KEY,
        base_url=config.OMDB_BASE_URL,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        http_client=state.http_client,
    )
    if not config.OMDB_API_KEY:
        logger.warning("OMDB_API_KEY is not set, the cache will serve local data only")

    state.cache_service = CacheService(movie_repo, state.provider, config)

    if config.SWEEP_ENABLED:
        maintenance = MaintenanceService(movie_repo)
        state.sweeper = asyncio.create_task(maintenance.run_periodic(config.SWEEP_INTERVAL_SECONDS))

async def close_resources():
    """Close all resources"""
    if state.sweeper:
        state.sweeper.cancel()
        try:
            await state.sweeper
        except asyncio.CancelledError:
            pass
    if state.cache_service:
        await state.cache_service.drain()
    if state.provider:
        await state.provider.close()
    if state.http_client:
        await state.http_client.aclose()
    if state.pg_pool:
        await state.pg_pool.close()

# Dependencies
async def get_db_pool() -> asyncpg.Pool:
    return state.pg_pool

def get_settings() -> Settings:
    return settings

async def get_movie_repository(db = Depends(get_db_pool)) -> MovieRepository:
    return MovieRepository(db)

async def get_cache_service() -> CacheService:
    return state.cache_service

async def get_maintenance_service(
    movie_repo: MovieRepository = Depends(get_movie_repository)
) -> MaintenanceService:
    return MaintenanceService(movie_repo)
