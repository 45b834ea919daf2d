import asyncio
from typing import Optional

from studysync.core.clock import Clock, SystemClock
from studysync.core.logging import get_logger
from studysync.crud.base import SessionStore
from studysync.services.sessions import SessionLifecycleManager

logger = get_logger(__name__)


class StaleSessionSweeper:
    """
    Background task that force-closes sessions left active past the stale
    threshold. Passes are at-least-once: a skipped or repeated pass is
    harmless because each close is a conditional transition.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        sessions: SessionStore,
        clock: Optional[Clock] = None,
        interval_seconds: float = 300,
    ):
        self.lifecycle = lifecycle
        self.sessions = sessions
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> int:
        """One sweep. Returns how many sessions this pass actually closed."""
        cutoff = self.lifecycle.stale_cutoff(self.clock.now())
        stale = await self.sessions.find_all_stale_active(cutoff)

        closed = 0
        for session in stale:
            try:
                if await self.lifecycle.force_close(session) is not None:
                    closed += 1
            except Exception:
                # one bad session must not stop the batch
                logger.exception(
                    "Failed to auto-close stale session",
                    extra={"session_id": session.id, "user_id": session.user_id},
                )

        if closed:
            logger.info(f"Cleaned up {closed} stale sessions", extra={"count": closed})
        return closed

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Stale session sweep failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="stale-session-sweeper")
            logger.info(f"Stale session sweeper started (every {self.interval_seconds}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Stale session sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
