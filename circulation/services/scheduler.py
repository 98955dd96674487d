import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from circulation.core.config import settings
from circulation.core.logging import get_logger
from circulation.services.auth import cleanup_expired_tokens
from circulation.services.overdue import SweepEngine

logger = get_logger("services.scheduler")


class SweepScheduler:
    """Owns the background task that fires the overdue sweep on a fixed interval."""

    def __init__(
        self,
        engine: SweepEngine,
        session_factory: async_sessionmaker,
        interval: float = settings.OVERDUE_CHECK_INTERVAL,
        error_backoff: float = settings.SWEEP_ERROR_BACKOFF,
        run_on_start: bool = settings.SWEEP_ON_STARTUP,
    ):
        self.engine = engine
        self._session_factory = session_factory
        self.interval = interval
        self.error_backoff = error_backoff
        self.run_on_start = run_on_start
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="overdue-sweep-scheduler")
        logger.info(f"Sweep scheduler started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sweep scheduler stopped")

    async def tick(self) -> None:
        """One scheduled run: the sweep, then housekeeping of revoked tokens."""
        await self.engine.run_sweep()
        async with self._session_factory() as db:
            await cleanup_expired_tokens(db)

    async def _loop(self) -> None:
        first = True
        while True:
            try:
                if not (first and self.run_on_start):
                    await asyncio.sleep(self.interval)
                first = False
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Sweep scheduler loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in sweep scheduler loop: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff)
