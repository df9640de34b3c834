
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging

logger = logging.getLogger(__name__)

class MovieCacheException(Exception):
    """Base exception for the application"""
    status_code = 500

    def __init__(self, message: str = "", external_id: str = None):
        super().__init__(message)
        self.message = message
        self.external_id = external_id

class MovieNotFoundError(MovieCacheException):
    """Neither the store nor the provider knows the requested movie."""
    status_code = 404

class StoreError(MovieCacheException):
    """The persistent store could not serve the operation."""
    status_code = 503

class ProviderError(MovieCacheException):
    """Base for failures talking to the metadata provider."""
    status_code = 502

class ProviderUnavailableError(ProviderError):
    """Transport failure, timeout, rate limit or rejected credentials."""
    status_code = 503

class ProviderNotFoundError(ProviderError):
    """The provider answered that the identifier does not exist."""
    status_code = 404

class ProviderDataError(ProviderError):
    """The provider answered with a payload we cannot map."""
    status_code = 502


def _error_body(error: str, request_id: str, **extra) -> dict:
    body = {"success": False, "error": error, "request_id": request_id}
    body.update(extra)
    return body

async def movie_cache_exception_handler(request: Request, exc: MovieCacheException):
    """
    Map domain errors to JSON responses.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    extra = {"request_id": request_id, "path": request.url.path, "external_id": exc.external_id}

    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}", extra=extra)
    else:
        logger.info(f"{type(exc).__name__}: {exc.message}", extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message or type(exc).__name__, request_id),
    )

async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler to execute last (if registered appropriately).
    Returns 500 JSON response and hides internal error details in production.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception occurred",
        extra={"request_id": request_id, "path": request.url.path},
        exc_info=exc
    )

    return JSONResponse(
        status_code=500,
        content=_error_body(
            "Internal Server Error",
            request_id,
            message="An unexpected error occurred. Please contact support.",
        ),
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle standard FastAPI HTTPExceptions.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    # Log 5xx errors as errors, 4xx as warnings or info
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code} error", extra={"request_id": request_id, "detail": exc.detail})
    else:
        logger.info(f"HTTP {exc.status_code} error", extra={"request_id": request_id, "detail": exc.detail})

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail, request_id),
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info("Validation error", extra={"request_id": request_id, "errors": exc.errors()})

    return JSONResponse(
        status_code=422,
        content=_error_body("Validation Error", request_id, details=jsonable_errors(exc)),
    )

def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that are not JSON serialisable
    return [
        {key: value for key, value in err.items() if key != "ctx"}
        for err in exc.errors()
    ]
