"""
=============================================================================
MOVIE METADATA CACHE API
=============================================================================
Features:
  - Cache-first search over PostgreSQL with OMDb backfill
  - Concurrent, failure-isolated detail fetches
  - Stale-but-usable fallback when OMDb is unreachable
  - Deterministic filter / sort / pagination
  - Periodic expired-cache sweep
=============================================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import settings
from .dependencies import close_resources, get_movie_repository, init_resources
from .exceptions import (
    MovieCacheException,
    global_exception_handler,
    http_exception_handler,
    movie_cache_exception_handler,
    validation_exception_handler,
)
from .limiter import limiter
from .logging_config import setup_logging
from .middleware import RequestTrackingMiddleware
from .repositories.movie_repository import MovieRepository
from .routers import maintenance_router, movie_router

API_VERSION = "1.0.0"

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# =============================================================================
# STARTUP & SHUTDOWN
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_resources(settings)
    logger.info("All connections initialized")
    yield
    await close_resources()
    logger.info("All connections closed")


app = FastAPI(
    title="Movie Metadata Cache API",
    description="Search and fetch movie metadata from a PostgreSQL cache backed by OMDb",
    version=API_VERSION,
    lifespan=lifespan,
)

# =============================================================================
# MIDDLEWARE & ERROR HANDLING
# =============================================================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestTrackingMiddleware)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(MovieCacheException, movie_cache_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# =============================================================================
# ROUTES
# =============================================================================
app.include_router(movie_router.router)
app.include_router(maintenance_router.router)


@app.get("/health")
async def health_check(movie_repo: MovieRepository = Depends(get_movie_repository)):
    """Health check endpoint"""
    try:
        store_ok = await movie_repo.ping()
    except MovieCacheException:
        store_ok = False
    return {
        "status": "healthy" if store_ok else "degraded",
        "store": "up" if store_ok else "down",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION
    }


# =============================================================================
# MAIN
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
