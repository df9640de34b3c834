import re
import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Client supplied ids are echoed into logs and headers, keep them boring
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(header_value: str = None) -> str:
    if header_value and REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return str(uuid.uuid4())


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a request_id and logs one line per request
    with its outcome and latency.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id

        extra = {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }
        # search text is the useful bit when tracing a slow backfill
        if "search" in request.query_params:
            extra["query"] = request.query_params["search"]

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            extra["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            extra["error"] = str(e)
            logger.error("Request failed", extra=extra, exc_info=True)
            raise

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        extra.update(status_code=response.status_code, duration_ms=duration_ms)
        if response.status_code >= 500:
            logger.warning("Request completed with server error", extra=extra)
        else:
            logger.info("Request completed", extra=extra)
        return response
