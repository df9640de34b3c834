
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

# Inbound limits keep provider fan-out inside the OMDb quota.
# key_func: determines how to identify the caller (IP address by default)
# storage_uri: where to store the limits (memory:// or redis://)
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    default_limits=["100/minute"]  # Global default limit
)
