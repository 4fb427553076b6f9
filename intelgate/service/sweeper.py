"""Background maintenance: expired sessions and stale rate-limit counters."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from intelgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 3600
MAX_BACKOFF_SECONDS = 3600


class SessionSweeper:
    """Runs ``sweep_fn`` in a worker thread every ``interval`` seconds."""

    def __init__(
        self,
        sweep_fn: Callable[[], Dict[str, Any]],
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sweep_fn = sweep_fn
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def run_once(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.sweep_fn)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                result = await self.run_once()
                consecutive_errors = 0
                logger.info("session_sweep_completed", **result)
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "session_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
