import logging
import sys
import json
from typing import Any

# Attributes passed through `extra=` that end up in the JSON line
EXTRA_FIELDS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "external_id",
    "query",
    "page",
    "requested",
    "stored",
    "failed",
    "deleted",
    "error",
)

class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings after parsing the LogRecord.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "line": record.lineno,
        }

        # Add extra attributes set via "extra" kwarg
        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)

def setup_logging(level: str = "INFO"):
    """
    Configure root logger to output JSON to stdout.
    """
    logger = logging.getLogger()
    logger.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    formatter = JSONFormatter()
    handler.setFormatter(formatter)

    # Remove existing handlers to avoid duplicates (e.g. from Uvicorn)
    logger.handlers = []
    logger.addHandler(handler)

    # Route Uvicorn access logs through the JSON handler
    logging.getLogger("uvicorn.access").handlers = []
    logging.getLogger("uvicorn.access").propagate = True
    # httpx logs every provider request at INFO, which leaks the api key in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
