"""
Thin async client for the OMDb API.

The client knows nothing about caching: it issues one request per call with a
bounded timeout, never retries, and translates OMDb's payload into the
canonical MovieRecord. OMDb's "N/A" sentinels are mapped to None/[] here and
nowhere else.
"""

import re
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import ProviderDataError, ProviderNotFoundError, ProviderUnavailableError
from ..schemas.movie import MediaType, MovieRecord, ProviderReference, RatingSource


NOT_AVAILABLE = "N/A"

# OMDb reports every failure as {"Response": "False", "Error": "..."}
NOT_FOUND_ERRORS = ("movie not found", "incorrect imdb id", "error getting data", "series or episode not found")
UNAVAILABLE_ERRORS = ("request limit reached", "invalid api key", "no api key provided")

_YEAR_RE = re.compile(r"(\d{4})")
_MINUTES_RE = re.compile(r"(\d+)")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value or value == NOT_AVAILABLE:
        return None
    return value


def _split_list(value: Any) -> List[str]:
    value = _clean(value)
    if value is None:
        return []
    items = [item.strip() for item in value.split(",")]
    return list(dict.fromkeys(item for item in items if item and item != NOT_AVAILABLE))


def _parse_year(value: Any) -> Optional[int]:
    value = _clean(value)
    if value is None:
        return None
    match = _YEAR_RE.search(value)  # "1999", "2008–2013", "2019–"
    return int(match.group(1)) if match else None


def _parse_minutes(value: Any) -> Optional[int]:
    value = _clean(value)
    if value is None:
        return None
    match = _MINUTES_RE.search(value)
    return int(match.group(1)) if match else None


def _parse_float(value: Any) -> Optional[float]:
    value = _clean(value)
    if value is None:
        return None
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def _parse_media_type(value: Any) -> MediaType:
    value = _clean(value)
    if value is None:
        return MediaType.MOVIE
    try:
        return MediaType(value.lower())
    except ValueError:
        raise ProviderDataError(f"Unsupported media type {value!r}")


def _parse_ratings(value: Any) -> List[RatingSource]:
    if not isinstance(value, list):
        return []
    ratings = []
    for item in value:
        if not isinstance(item, dict):
            continue
        source, rating = _clean(item.get("Source")), _clean(item.get("Value"))
        if source and rating:
            ratings.append(RatingSource(source=source, value=rating))
    return ratings


def to_movie_record(payload: Dict[str, Any]) -> MovieRecord:
    """Map an OMDb detail payload onto the canonical record (no cache metadata)."""
    external_id = _clean(payload.get("imdbID"))
    title = _clean(payload.get("Title"))
    if not external_id or not title:
        raise ProviderDataError("Provider payload is missing imdbID or Title", external_id=external_id)

    return MovieRecord(
        external_id=external_id,
        title=title,
        release_year=_parse_year(payload.get("Year")),
        runtime_minutes=_parse_minutes(payload.get("Runtime")),
        genres=_split_list(payload.get("Genre")),
        director=_clean(payload.get("Director")),
        writers=_split_list(payload.get("Writer")),
        cast=_split_list(payload.get("Actors")),
        plot=_clean(payload.get("Plot")),
        languages=_split_list(payload.get("Language")),
        countries=_split_list(payload.get("Country")),
        rating_sources=_parse_ratings(payload.get("Ratings")),
        aggregate_rating=_parse_float(payload.get("imdbRating")),
        media_type=_parse_media_type(payload.get("Type")),
        rated=_clean(payload.get("Rated")),
        poster_url=_clean(payload.get("Poster")),
    )


def to_reference(item: Dict[str, Any]) -> Optional[ProviderReference]:
    external_id = _clean(item.get("imdbID"))
    title = _clean(item.get("Title"))
    if not external_id or not title:
        return None
    media_type = _clean(item.get("Type"))
    try:
        media_type = MediaType(media_type.lower()) if media_type else None
    except ValueError:
        media_type = None
    return ProviderReference(
        external_id=external_id,
        title=title,
        year=_parse_year(item.get("Year")),
        media_type=media_type,
    )


class OMDbClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://www.omdbapi.com/",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def fetch_by_id(self, external_id: str) -> MovieRecord:
        payload = await self._get({"i": external_id, "plot": "full"}, external_id=external_id)
        error = self._error_message(payload)
        if error:
            raise self._classify_error(error, external_id)
        record = to_movie_record(payload)
        if record.external_id != external_id:
            # storing it would cache the answer under an id nobody asked for
            raise ProviderDataError(
                f"OMDb answered {external_id} with {record.external_id}", external_id=external_id
            )
        return record

    async def search_by_title(
        self,
        text: str,
        page: int = 1,
        media_type: Optional[str] = None,
    ) -> List[ProviderReference]:
        params = {"s": text, "page": page}
        if media_type:
            params["type"] = media_type
        payload = await self._get(params)
        error = self._error_message(payload)
        if error:
            exc = self._classify_error(error)
            if isinstance(exc, ProviderNotFoundError) or "too many results" in error.lower():
                # an empty search is an answer, not a failure
                return []
            raise exc

        items = payload.get("Search")
        if not isinstance(items, list):
            raise ProviderDataError("Search payload has no result list")
        references = [to_reference(item) for item in items if isinstance(item, dict)]
        return [ref for ref in references if ref is not None]

    async def validate_api_key(self) -> bool:
        """False only when OMDb rejects the key; other failures say nothing about it."""
        try:
            await self.search_by_title("test")
        except ProviderUnavailableError as exc:
            return "api key" not in exc.message.lower()
        except ProviderDataError:
            return True
        return True

    async def _get(self, params: Dict[str, Any], external_id: str = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderUnavailableError("OMDb API key is not configured", external_id=external_id)

        try:
            response = await self.http_client.get(
                self.base_url,
                params={"apikey": self.api_key, "r": "json", **params},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(f"OMDb request timed out: {exc}", external_id=external_id) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"OMDb transport error: {exc}", external_id=external_id) from exc

        if response.status_code == 404:
            raise ProviderNotFoundError("OMDb returned 404", external_id=external_id)
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(f"OMDb returned HTTP {response.status_code}", external_id=external_id)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderDataError("OMDb returned a non-JSON body", external_id=external_id) from exc
        if not isinstance(payload, dict):
            raise ProviderDataError("OMDb returned an unexpected payload", external_id=external_id)

        # OMDb answers 401 with a JSON error body for bad keys
        if response.status_code >= 400 and not self._error_message(payload):
            raise ProviderUnavailableError(f"OMDb returned HTTP {response.status_code}", external_id=external_id)
        return payload

    @staticmethod
    def _error_message(payload: Dict[str, Any]) -> Optional[str]:
        if str(payload.get("Response", "True")).lower() == "false":
            return str(payload.get("Error") or "Unknown provider error")
        return None

    @staticmethod
    def _classify_error(error: str, external_id: str = None):
        lowered = error.lower()
        if any(marker in lowered for marker in NOT_FOUND_ERRORS):
            return ProviderNotFoundError(error, external_id=external_id)
        if any(marker in lowered for marker in UNAVAILABLE_ERRORS):
            return ProviderUnavailableError(error, external_id=external_id)
        return ProviderDataError(error, external_id=external_id)
