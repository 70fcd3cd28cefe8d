"""Cancellable periodic background jobs.

Used for the pending-write retry loop and the retention sweep. Each job owns
one asyncio task; ``stop()`` interrupts the sleep between runs immediately and
lets a run that is already in progress finish its batch (bounded by a grace
period).
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

from hostgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_BACKOFF_SECONDS = 300
DEFAULT_STOP_GRACE_SECONDS = 30.0


class PeriodicTask:
    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        *,
        run_immediately: bool = True,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.max_backoff_seconds = max_backoff_seconds
        self.runs = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("periodic_task_already_running", task=self.name)
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"periodic:{self.name}")
        logger.info("periodic_task_started", task=self.name, interval=self.interval_seconds)

    async def stop(self, *, grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS) -> None:
        """Stop the loop, waiting up to ``grace_seconds`` for an in-flight run."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            done, _ = await asyncio.wait({self._task}, timeout=grace_seconds)
            if not done:
                logger.warning("periodic_task_stop_timeout", task=self.name, grace=grace_seconds)
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def run_once(self) -> Any:
        result = await self.func()
        self.runs += 1
        return result

    async def _sleep(self, delay: float) -> None:
        assert self._stop_event is not None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), delay)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        if not self.run_immediately:
            await self._sleep(self.interval_seconds)
        while self._running:
            delay = self.interval_seconds
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "periodic_task_error",
                    task=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    delay = min(
                        self.max_backoff_seconds,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "periodic_task_backoff",
                        task=self.name,
                        backoff_seconds=delay,
                        consecutive_errors=consecutive_errors,
                    )
            if self._running:
                await self._sleep(delay)


__all__ = ["PeriodicTask"]
