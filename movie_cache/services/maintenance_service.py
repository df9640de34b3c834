import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..core.freshness import utc_now
from ..exceptions import StoreError
from ..repositories.movie_repository import MovieRepository

logger = logging.getLogger(__name__)

class MaintenanceService:
    def __init__(self, movie_repo: MovieRepository, clock: Callable[[], datetime] = utc_now):
        self.movie_repo = movie_repo
        self.clock = clock

    async def purge_expired(self) -> int:
        """Delete expired records nobody read after they expired."""
        deleted = await self.movie_repo.delete_expired_since(self.clock())
        logger.info("Expired cache purged", extra={"deleted": deleted})
        return deleted

    async def sweep_once(self) -> Optional[int]:
        """
        One periodic run. Returns None when another instance holds the
        sweep lock.
        """
        async with self.movie_repo.try_sweep_lock() as acquired:
            if not acquired:
                logger.info("Sweep skipped, lock held elsewhere")
                return None
            return await self.purge_expired()

    async def run_periodic(self, interval_seconds: float):
        """Sweep forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_once()
            except StoreError as e:
                logger.error("Expired cache sweep failed", extra={"error": str(e)})
