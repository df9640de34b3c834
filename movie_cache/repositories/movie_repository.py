import json
import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Tuple, Any

import asyncpg
from asyncpg import Pool

from ..core.query_builder import SearchCriteria, build_search_sql
from ..exceptions import StoreError
from ..models.movie import schema_statements
from ..schemas.movie import MovieRecord

logger = logging.getLogger(__name__)

# pg_try_advisory_lock key for the expired-cache sweep
SWEEP_LOCK_KEY = 0x6D6F7669

MOVIE_COLUMNS = """
    external_id, title, release_year, runtime_minutes, genres, director,
    writers, cast_members, plot, languages, countries, rating_sources,
    aggregate_rating, media_type, rated, poster_url,
    last_fetched_at, expires_at, last_accessed_at, search_count, popularity_score
"""

JSON_COLUMNS = ("genres", "writers", "cast_members", "languages", "countries", "rating_sources")

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

STORE_UNAVAILABLE = "Movie store is unavailable"


def _store_failure(operation: str, exc: Exception) -> StoreError:
    # driver text stays in the log, clients get the generic message
    logger.error(f"Store operation {operation} failed", extra={"error": repr(exc)})
    return StoreError(STORE_UNAVAILABLE)


def _store_errors(func):
    """Surface driver failures as StoreError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DRIVER_ERRORS as exc:
            raise _store_failure(func.__name__, exc) from exc
    return wrapper


def _load_json(value: Any) -> Any:
    if value is None:
        return []
    return json.loads(value) if isinstance(value, str) else value


def row_to_record(row) -> MovieRecord:
    data = dict(row)
    for column in JSON_COLUMNS:
        data[column] = _load_json(data.get(column))
    data["cast"] = data.pop("cast_members")
    return MovieRecord(**data)


class MovieRepository:
    def __init__(self, db: Pool):
        self.db = db

    @_store_errors
    async def ensure_schema(self):
        async with self.db.acquire() as conn:
            for statement in schema_statements():
                await conn.execute(statement)

    @_store_errors
    async def ping(self) -> bool:
        return await self.db.fetchval("SELECT 1") == 1

    @_store_errors
    async def find_by_id(self, external_id: str) -> Optional[MovieRecord]:
        query = f"SELECT {MOVIE_COLUMNS} FROM movies WHERE external_id = $1"
        row = await self.db.fetchrow(query, external_id)
        return row_to_record(row) if row else None

    @_store_errors
    async def find_by_query(
        self,
        criteria: SearchCriteria,
        skip: int,
        limit: int,
    ) -> Tuple[List[MovieRecord], int]:
        """
        Return one page of matches and the total match count.
        Both reads share a snapshot so the page and the count agree.
        """
        sql = build_search_sql(criteria)
        params = sql.params
        query_page = f"""
            SELECT {MOVIE_COLUMNS}
            FROM movies
            WHERE {sql.where}
            ORDER BY {sql.order_by}
            LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
        """
        query_count = f"SELECT COUNT(*) FROM movies WHERE {sql.where}"

        async with self.db.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                rows = await conn.fetch(query_page, *params, limit, skip)
                total = await conn.fetchval(query_count, *sql.where_params)

        return [row_to_record(row) for row in rows], int(total or 0)

    @_store_errors
    async def find_popular(self, limit: int) -> List[MovieRecord]:
        query = f"""
            SELECT {MOVIE_COLUMNS}
            FROM movies
            ORDER BY popularity_score DESC, aggregate_rating DESC NULLS LAST, external_id ASC
            LIMIT $1
        """
        rows = await self.db.fetch(query, limit)
        return [row_to_record(row) for row in rows]

    @_store_errors
    async def upsert(self, record: MovieRecord) -> MovieRecord:
        """
        Insert or replace by external_id. Access counters survive the
        replacement, and an older fetch never overwrites a newer one.
        """
        query = f"""
            INSERT INTO movies (
                external_id, title, release_year, runtime_minutes, genres, director,
                writers, cast_members, plot, languages, countries, rating_sources,
                aggregate_rating, media_type, rated, poster_url,
                last_fetched_at, expires_at, created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5::jsonb, $6, $7::jsonb, $8::jsonb, $9, $10::jsonb,
                $11::jsonb, $12::jsonb, $13, $14, $15, $16, $17, $18, NOW(), NOW()
            )
            ON CONFLICT (external_id) DO UPDATE SET
                title = EXCLUDED.title,
                release_year = EXCLUDED.release_year,
                runtime_minutes = EXCLUDED.runtime_minutes,
                genres = EXCLUDED.genres,
                director = EXCLUDED.director,
                writers = EXCLUDED.writers,
                cast_members = EXCLUDED.cast_members,
                plot = EXCLUDED.plot,
                languages = EXCLUDED.languages,
                countries = EXCLUDED.countries,
                rating_sources = EXCLUDED.rating_sources,
                aggregate_rating = EXCLUDED.aggregate_rating,
                media_type = EXCLUDED.media_type,
                rated = EXCLUDED.rated,
                poster_url = EXCLUDED.poster_url,
                last_fetched_at = EXCLUDED.last_fetched_at,
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
            WHERE movies.last_fetched_at IS NULL
               OR movies.last_fetched_at <= EXCLUDED.last_fetched_at
            RETURNING {MOVIE_COLUMNS}
        """
        row = await self.db.fetchrow(
            query,
            record.external_id,
            record.title,
            record.release_year,
            record.runtime_minutes,
            json.dumps(record.genres),
            record.director,
            json.dumps(record.writers),
            json.dumps(record.cast),
            record.plot,
            json.dumps(record.languages),
            json.dumps(record.countries),
            json.dumps([rating.model_dump() for rating in record.rating_sources]),
            record.aggregate_rating,
            record.media_type.value,
            record.rated,
            record.poster_url,
            record.last_fetched_at,
            record.expires_at,
        )
        if row is None:
            # a newer fetch already landed; keep it
            logger.info("Skipped stale upsert", extra={"external_id": record.external_id})
            return await self.find_by_id(record.external_id)
        return row_to_record(row)

    @_store_errors
    async def increment_access_counters(self, external_ids: Iterable[str], accessed_at: datetime) -> int:
        ids = sorted(set(external_ids))
        if not ids:
            return 0
        query = """
            UPDATE movies
            SET search_count = search_count + 1,
                popularity_score = popularity_score + 1,
                last_accessed_at = $2
            WHERE external_id = ANY($1::varchar[])
        """
        status = await self.db.execute(query, ids, accessed_at)
        return _affected(status)

    @_store_errors
    async def delete_expired_since(self, now: datetime) -> int:
        """Drop records that expired and were not read after expiring."""
        query = """
            DELETE FROM movies
            WHERE expires_at < $1
              AND (last_accessed_at IS NULL OR last_accessed_at < expires_at)
        """
        status = await self.db.execute(query, now)
        return _affected(status)

    @asynccontextmanager
    async def try_sweep_lock(self) -> AsyncIterator[bool]:
        """
        Hold the sweep advisory lock for the duration of the block.
        Yields False when another instance already holds it.
        """
        try:
            conn = await self.db.acquire()
        except DRIVER_ERRORS as exc:
            raise _store_failure("try_sweep_lock", exc) from exc
        try:
            try:
                acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", SWEEP_LOCK_KEY)
            except DRIVER_ERRORS as exc:
                raise _store_failure("try_sweep_lock", exc) from exc
            try:
                yield bool(acquired)
            finally:
                if acquired:
                    await conn.execute("SELECT pg_advisory_unlock($1)", SWEEP_LOCK_KEY)
        finally:
            await self.db.release(conn)


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3" / "DELETE 0"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0
