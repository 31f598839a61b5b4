"""Background sweep of expired refresh tokens.

The scheduler runs one sweep as soon as it starts and then one per interval.
A failed sweep is retried after a much shorter delay so a storage outage does
not leave expired rows piling up for a whole period. The loop only ends when
its task is cancelled.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock

if TYPE_CHECKING:
    from authcore.service.auth import TokenLifecycleManager

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_RETRY_DELAY_SECONDS = 30 * 60

Sleep = Callable[[float], Awaitable[None]]


class CleanupScheduler:
    def __init__(
        self,
        manager: "TokenLifecycleManager",
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        clock: Optional[Clock] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0 or retry_delay_seconds <= 0:
            raise ValueError("cleanup delays must be positive")
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.clock = clock or SystemClock()
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("token_cleanup_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "token_cleanup_started",
            interval_seconds=self.interval_seconds,
            retry_delay_seconds=self.retry_delay_seconds,
        )

    async def stop(self) -> None:
        """Cancel the loop and wait for it to unwind."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_cleanup_stopped")

    async def run_once(self) -> bool:
        """Run a single sweep. Returns False when it failed."""
        self.runs += 1
        try:
            removed = await self.manager.cleanup()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "token_cleanup_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            removed = None
        if removed is None:
            self.failures += 1
            return False
        return True

    def next_delay(self, succeeded: bool) -> float:
        return self.interval_seconds if succeeded else self.retry_delay_seconds

    async def _run_loop(self) -> None:
        while self._running:
            succeeded = await self.run_once()
            delay = self.next_delay(succeeded)
            next_run_at = self.clock.now() + timedelta(seconds=delay)
            if succeeded:
                logger.debug("token_cleanup_scheduled", next_run_at=next_run_at.isoformat())
            else:
                logger.warning(
                    "token_cleanup_retry_scheduled",
                    retry_in_seconds=delay,
                    next_run_at=next_run_at.isoformat(),
                )
            await self._sleep(delay)
