
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from movie_cache.config import Settings
from movie_cache.core.query_builder import SearchCriteria, tokenize
from movie_cache.exceptions import ProviderNotFoundError, ProviderUnavailableError
from movie_cache.schemas.movie import MovieRecord, ProviderReference, SortKey
from movie_cache.services.cache_service import CacheService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_record(external_id: str, title: str = None, **fields) -> MovieRecord:
    data = {
        "external_id": external_id,
        "title": title or f"Movie {external_id}",
        "release_year": 1999,
        "genres": ["Action"],
        "plot": "A hacker learns the truth.",
        "aggregate_rating": 7.0,
    }
    data.update(fields)
    return MovieRecord(**data)


def fresh(record: MovieRecord, now: datetime = NOW, ttl_hours: int = 24) -> MovieRecord:
    return record.model_copy(update={
        "last_fetched_at": now - timedelta(hours=1),
        "expires_at": now - timedelta(hours=1) + timedelta(hours=ttl_hours),
    })


def expired(record: MovieRecord, now: datetime = NOW) -> MovieRecord:
    return record.model_copy(update={
        "last_fetched_at": now - timedelta(hours=48),
        "expires_at": now - timedelta(hours=24),
    })


class FakeMovieRepository:
    """In-memory stand-in for MovieRepository with the same query semantics."""

    def __init__(self):
        self.rows: Dict[str, MovieRecord] = {}
        self.upserts: List[str] = []
        self.lock_held_elsewhere = False

    def seed(self, *records: MovieRecord):
        for record in records:
            self.rows[record.external_id] = record

    async def ping(self) -> bool:
        return True

    async def find_by_id(self, external_id: str) -> Optional[MovieRecord]:
        return self.rows.get(external_id)

    @staticmethod
    def _token_hits(record: MovieRecord, text: str) -> int:
        haystacks = [record.title.lower(), (record.plot or "").lower()]
        return sum(1 for token in tokenize(text) if any(token in hay for hay in haystacks))

    def _matches(self, record: MovieRecord, criteria: SearchCriteria) -> bool:
        if tokenize(criteria.text) and not self._token_hits(record, criteria.text):
            return False
        if criteria.year is not None and record.release_year != criteria.year:
            return False
        if criteria.genre and criteria.genre not in record.genres:
            return False
        if criteria.media_type and record.media_type.value != criteria.media_type:
            return False
        return True

    @staticmethod
    def _relevance(record: MovieRecord, text: str) -> int:
        title, text = record.title.lower(), text.lower()
        if title == text:
            return 0
        if title.startswith(text):
            return 1
        if text in title:
            return 2
        return 3

    def _ordered(self, records: List[MovieRecord], criteria: SearchCriteria) -> List[MovieRecord]:
        records = sorted(records, key=lambda r: r.external_id)
        if criteria.sort == SortKey.RATING:
            return sorted(records, key=lambda r: (r.aggregate_rating is None, -(r.aggregate_rating or 0)))
        if criteria.sort == SortKey.YEAR:
            return sorted(records, key=lambda r: (r.release_year is None, -(r.release_year or 0)))
        if criteria.sort == SortKey.TITLE:
            return sorted(records, key=lambda r: r.title)
        if criteria.sort == SortKey.POPULARITY:
            return sorted(records, key=lambda r: -r.popularity_score)
        return sorted(records, key=lambda r: (-self._token_hits(r, criteria.text), self._relevance(r, criteria.text)))

    async def find_by_query(self, criteria: SearchCriteria, skip: int, limit: int):
        matches = [r for r in self.rows.values() if self._matches(r, criteria)]
        ordered = self._ordered(matches, criteria)
        return ordered[skip:skip + limit], len(ordered)

    async def find_popular(self, limit: int) -> List[MovieRecord]:
        ordered = sorted(self.rows.values(), key=lambda r: r.external_id)
        ordered.sort(key=lambda r: (-r.popularity_score, -(r.aggregate_rating or 0)))
        return ordered[:limit]

    async def upsert(self, record: MovieRecord) -> MovieRecord:
        self.upserts.append(record.external_id)
        current = self.rows.get(record.external_id)
        if current is not None:
            if current.last_fetched_at and record.last_fetched_at and current.last_fetched_at > record.last_fetched_at:
                return current
            record = record.model_copy(update={
                "search_count": current.search_count,
                "popularity_score": current.popularity_score,
                "last_accessed_at": current.last_accessed_at,
            })
        self.rows[record.external_id] = record
        return record

    async def increment_access_counters(self, external_ids, accessed_at) -> int:
        touched = 0
        for external_id in set(external_ids):
            current = self.rows.get(external_id)
            if current is None:
                continue
            self.rows[external_id] = current.model_copy(update={
                "search_count": current.search_count + 1,
                "popularity_score": current.popularity_score + 1,
                "last_accessed_at": accessed_at,
            })
            touched += 1
        return touched

    async def delete_expired_since(self, now: datetime) -> int:
        doomed = [
            r.external_id for r in self.rows.values()
            if r.expires_at is not None and r.expires_at < now
            and (r.last_accessed_at is None or r.last_accessed_at < r.expires_at)
        ]
        for external_id in doomed:
            del self.rows[external_id]
        return len(doomed)

    @asynccontextmanager
    async def try_sweep_lock(self):
        yield not self.lock_held_elsewhere


class FakeProvider:
    """Scripted OMDb client."""

    def __init__(self):
        self.references: List[ProviderReference] = []
        self.details: Dict[str, MovieRecord] = {}
        self.failing_ids: Dict[str, Exception] = {}
        self.search_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.search_calls = []
        self.fetch_calls = []

    def add(self, record: MovieRecord):
        self.details[record.external_id] = record
        self.references.append(ProviderReference(
            external_id=record.external_id,
            title=record.title,
            year=record.release_year,
        ))

    async def search_by_title(self, text, page=1, media_type=None):
        self.search_calls.append((text, page, media_type))
        if self.search_error:
            raise self.search_error
        return list(self.references)

    async def fetch_by_id(self, external_id):
        self.fetch_calls.append(external_id)
        if self.fetch_error:
            raise self.fetch_error
        if external_id in self.failing_ids:
            raise self.failing_ids[external_id]
        if external_id not in self.details:
            raise ProviderNotFoundError("Incorrect IMDb ID.", external_id=external_id)
        return self.details[external_id]


@pytest.fixture
def test_settings():
    return Settings(
        OMDB_API_KEY="test-key",
        CACHE_TTL_HOURS=24,
        DEFAULT_PAGE_SIZE=10,
        MAX_PAGE_SIZE=50,
        BACKFILL_MAX_ITEMS=10,
        BACKFILL_ITEM_TIMEOUT_SECONDS=1.0,
        COUNTER_UPDATE_GRACE_SECONDS=1.0,
        SWEEP_ENABLED=False,
    )


@pytest.fixture
def fake_repo():
    return FakeMovieRepository()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def cache_service(fake_repo, fake_provider, test_settings):
    return CacheService(fake_repo, fake_provider, test_settings, clock=lambda: NOW)


@pytest.fixture
def provider_down():
    return ProviderUnavailableError("OMDb request timed out")


@pytest_asyncio.fixture
async def client(cache_service, fake_repo, test_settings):
    from movie_cache.main import app
    from movie_cache.dependencies import (
        get_cache_service,
        get_maintenance_service,
        get_movie_repository,
        get_settings,
    )
    from movie_cache.services.maintenance_service import MaintenanceService
    from movie_cache.limiter import limiter

    # Override dependencies
    app.dependency_overrides[get_cache_service] = lambda: cache_service
    app.dependency_overrides[get_movie_repository] = lambda: fake_repo
    app.dependency_overrides[get_maintenance_service] = lambda: MaintenanceService(fake_repo, clock=lambda: NOW)
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    limiter.enabled = False
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    limiter.enabled = True
    await cache_service.drain()

    app.dependency_overrides = {}
