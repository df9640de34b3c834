import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set

from ..config import Settings
from ..core.freshness import Freshness, classify, stamp_fetched, utc_now
from ..core.query_builder import (
    SearchCriteria,
    clamp_limit,
    clamp_page,
    paginate,
    should_backfill,
    skip_for,
)
from ..exceptions import (
    MovieNotFoundError,
    ProviderError,
    ProviderNotFoundError,
    ProviderUnavailableError,
)
from ..repositories.movie_repository import MovieRepository
from ..schemas.movie import (
    BackfillSummary,
    MovieLookup,
    MovieRecord,
    ProviderReference,
    SearchQuery,
    SearchResult,
)
from .omdb_client import OMDbClient

logger = logging.getLogger(__name__)

class CacheService:
    def __init__(
        self,
        movie_repo: MovieRepository,
        provider: OMDbClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.movie_repo = movie_repo
        self.provider = provider
        self.settings = settings
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

    async def resolve_search(self, query: SearchQuery) -> SearchResult:
        """
        Serve a search from the store, backfilling from the provider when
        the local index looks incomplete.
        Strategy:
        1. Query the store with the requested filter/sort/page
        2. If the page is empty, or page 1 is short, backfill from the provider
        3. Re-read the store so the response reflects the merged set
        4. Bump access counters in the background
        """
        criteria = SearchCriteria.from_query(query)
        page = clamp_page(query.page)
        limit = clamp_limit(query.limit, self.settings.DEFAULT_PAGE_SIZE, self.settings.MAX_PAGE_SIZE)
        skip = skip_for(page, limit)

        # 1. Local read
        records, total = await self.movie_repo.find_by_query(criteria, skip, limit)
        backfill = BackfillSummary()

        # 2. Backfill
        if should_backfill(page, limit, len(records)):
            now = self.clock()
            cached = {r.external_id for r in records if classify(now, r) == Freshness.FRESH}
            backfill = await self._backfill(criteria, page, cached)

            # 3. Re-read even when nothing was stored
            records, total = await self.movie_repo.find_by_query(criteria, skip, limit)

            if total == 0 and not backfill.provider_reachable:
                # nothing local and the provider could not answer: we do not know
                raise ProviderUnavailableError(
                    f"Search results unavailable: {backfill.provider_error}"
                )

        # 4. Access counters
        await self._record_access(record.external_id for record in records)

        return SearchResult(
            records=records,
            pagination=paginate(total, page, limit),
            backfill=backfill,
        )

    async def resolve_by_id(self, external_id: str) -> MovieLookup:
        """
        Fresh records are served from the store. Missing or expired ones are
        refetched; when the provider fails, an expired record is served as a
        fallback and only a missing one becomes a not-found.
        """
        record = await self.movie_repo.find_by_id(external_id)
        freshness = classify(self.clock(), record)

        if freshness == Freshness.FRESH:
            await self._record_access([external_id])
            return MovieLookup(record=record, stale=False)

        try:
            refreshed = await self._fetch_and_store(external_id)
        except ProviderError as exc:
            if record is not None:
                logger.warning(
                    "Provider failed, serving stale record",
                    extra={"external_id": external_id, "error": str(exc)},
                )
                await self._record_access([external_id])
                return MovieLookup(record=record, stale=True)
            logger.info(
                "Movie not found in store or provider",
                extra={"external_id": external_id, "error": str(exc)},
            )
            raise MovieNotFoundError("Movie not found", external_id=external_id) from exc

        await self._record_access([external_id])
        return MovieLookup(record=refreshed, stale=False)

    async def refresh_by_id(self, external_id: str) -> MovieRecord:
        """Force a provider fetch regardless of freshness."""
        try:
            return await self._fetch_and_store(external_id)
        except ProviderNotFoundError as exc:
            raise MovieNotFoundError("Movie not found", external_id=external_id) from exc

    async def get_popular(self, limit: Optional[int] = None) -> List[MovieRecord]:
        limit = clamp_limit(limit, self.settings.DEFAULT_PAGE_SIZE, self.settings.MAX_PAGE_SIZE)
        return await self.movie_repo.find_popular(limit)

    async def _backfill(self, criteria: SearchCriteria, page: int, cached: Set[str]) -> BackfillSummary:
        summary = BackfillSummary(attempted=True)
        try:
            references = await self.provider.search_by_title(
                criteria.text, page=page, media_type=criteria.media_type
            )
        except ProviderError as exc:
            logger.warning(
                "Provider search failed, serving local results",
                extra={"query": criteria.text, "page": page, "error": str(exc)},
            )
            summary.provider_error = str(exc)
            summary.provider_reachable = not isinstance(exc, ProviderUnavailableError)
            return summary

        # records already fresh on the local page need no detail fetch
        references = [ref for ref in self._dedupe(references) if ref.external_id not in cached]
        references = references[: self.settings.BACKFILL_MAX_ITEMS]
        summary.requested = len(references)
        if not references:
            return summary

        # Fan out, one bounded fetch per reference
        results = await asyncio.gather(
            *(self._fetch_and_store(ref.external_id) for ref in references),
            return_exceptions=True,
        )

        for ref, result in zip(references, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                summary.failed += 1
                logger.warning(
                    "Backfill item dropped",
                    extra={"external_id": ref.external_id, "error": repr(result)},
                )
            else:
                summary.stored += 1

        unavailable = [r for r in results if isinstance(r, ProviderUnavailableError)]
        if not summary.stored and len(unavailable) == len(results):
            # the provider listed titles but could not serve any of them
            summary.provider_reachable = False
            summary.provider_error = str(unavailable[0])

        logger.info(
            "Backfill finished",
            extra={
                "query": criteria.text,
                "page": page,
                "requested": summary.requested,
                "stored": summary.stored,
                "failed": summary.failed,
            },
        )
        return summary

    async def _fetch_and_store(self, external_id: str) -> MovieRecord:
        try:
            fetched = await asyncio.wait_for(
                self.provider.fetch_by_id(external_id),
                timeout=self.settings.BACKFILL_ITEM_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailableError("Provider fetch timed out", external_id=external_id) from exc

        record = stamp_fetched(fetched, self.clock(), self.settings.CACHE_TTL_HOURS)
        # a started write completes even if the request is cancelled
        return await asyncio.shield(self.movie_repo.upsert(record))

    async def _record_access(self, external_ids: Iterable[str]):
        ids = set(external_ids)
        if not ids:
            return
        task = asyncio.create_task(self._increment_counters(ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        # wait briefly so counters usually land before the response
        await asyncio.wait({task}, timeout=self.settings.COUNTER_UPDATE_GRACE_SECONDS)

    async def _increment_counters(self, ids: Set[str]):
        try:
            await asyncio.wait_for(
                self.movie_repo.increment_access_counters(ids, self.clock()),
                timeout=self.settings.COUNTER_UPDATE_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning(
                "Access counter update failed",
                extra={"error": repr(e), "requested": len(ids)},
            )

    async def drain(self):
        """Wait for pending counter updates (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    def _dedupe(references: List[ProviderReference]) -> List[ProviderReference]:
        seen = {}
        for ref in references:
            seen.setdefault(ref.external_id, ref)
        return list(seen.values())
