"""
ABEngine Maintenance Scheduler

A single cancellable asyncio task that runs the periodic maintenance
pass (health checks, bandit reallocation, winner evaluation) at a fixed
interval. Passes never overlap, and once ``stop`` returns no further
pass will start.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class MaintenanceScheduler:
    """Runs ``task`` every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        task: Callable[[], Any],
        interval_seconds: float = 60.0,
        name: str = "maintenance",
    ):
        self._task_fn = task
        self._interval = interval_seconds
        self.name = name
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats: Dict[str, Any] = {
            "passes": 0,
            "failed_passes": 0,
            "last_pass_at": None,
        }

    @property
    def running(self) -> bool:
        return self._running

    @property
    def passes(self) -> int:
        return self._stats["passes"]

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("scheduler_started", name=self.name, interval=self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped", name=self.name, passes=self.passes)

    async def run_once(self) -> Any:
        """Run one pass now, awaiting the task if it is a coroutine."""
        result = self._task_fn()
        if asyncio.iscoroutine(result):
            result = await result
        self._stats["passes"] += 1
        self._stats["last_pass_at"] = datetime.now()
        return result

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                self._stats["failed_passes"] += 1
                logger.exception("scheduler_pass_error", name=self.name)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "running": self._running, "interval_seconds": self._interval}
