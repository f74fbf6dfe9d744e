"""
ABEngine Snapshot Writer

Debounced, off-hot-path persistence. Callers only flip a dirty flag;
a background task writes the latest snapshot every flush interval.
Store failures put the writer into a degraded state and retry with
exponential backoff while the engine keeps running in memory.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import structlog

from abengine.config import PersistenceConfig
from abengine.persistence.store import Store

logger = structlog.get_logger(__name__)


class SnapshotWriter:
    """Writes registry snapshots to a store with retry and backoff."""

    def __init__(
        self,
        store: Store,
        snapshot: Callable[[], bytes],
        config: Optional[PersistenceConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._snapshot = snapshot
        self._config = config or PersistenceConfig()
        self._clock = clock
        self._dirty = False
        self._failures = 0
        self._next_attempt_at = 0.0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._stats: Dict[str, Any] = {
            "writes": 0,
            "failed_writes": 0,
            "last_error": None,
        }

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def degraded(self) -> bool:
        return self._failures > 0

    @property
    def failures(self) -> int:
        return self._failures

    def mark_dirty(self) -> None:
        self._dirty = True

    def retry_delay(self) -> float:
        if self._failures <= 0:
            return 0.0
        cfg = self._config
        delay = cfg.retry_delay_seconds * (cfg.retry_backoff_multiplier ** (self._failures - 1))
        return min(delay, cfg.max_retry_delay_seconds)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def flush_now(self) -> bool:
        """Write immediately if there are unsaved changes.

        Returns True when the store holds the latest state.
        """
        if not self._dirty:
            return True

        # Clear first so changes made during the write are not lost
        self._dirty = False
        try:
            self._store.set(self._config.snapshot_key, self._snapshot())
        except Exception as e:
            self._write_failed(e)
            return False
        self._write_succeeded()
        return True

    async def flush(self) -> bool:
        """Flush unless a backoff window is still open.

        The store write runs in the default executor so a slow disk does
        not stall the event loop.
        """
        if self._clock() < self._next_attempt_at:
            return False
        if not self._dirty:
            return True

        self._dirty = False
        loop = asyncio.get_event_loop()
        try:
            data = self._snapshot()
            self._inflight = loop.run_in_executor(
                None,
                self._store.set,
                self._config.snapshot_key,
                data,
            )
            await asyncio.shield(self._inflight)
        except asyncio.CancelledError:
            self._dirty = True
            raise
        except Exception as e:
            self._write_failed(e)
            return False
        finally:
            if self._inflight is not None and self._inflight.done():
                self._inflight = None
        self._write_succeeded()
        return True

    def _write_failed(self, error: Exception) -> None:
        self._dirty = True
        self._failures += 1
        self._stats["failed_writes"] += 1
        self._stats["last_error"] = str(error)
        delay = self.retry_delay()
        self._next_attempt_at = self._clock() + delay
        logger.warning(
            "snapshot_write_failed",
            attempt=self._failures,
            retry_in=delay,
            error=str(error),
        )

    def _write_succeeded(self) -> None:
        if self._failures:
            logger.info("snapshot_write_recovered", after_failures=self._failures)
        self._failures = 0
        self._next_attempt_at = 0.0
        self._stats["writes"] += 1

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("snapshot_writer_started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inflight is not None:
            # Let a cancelled background write land before the final one
            try:
                await self._inflight
            except Exception as e:
                logger.warning("snapshot_inflight_write_failed", error=str(e))
            self._inflight = None
        self.flush_now()
        logger.info("snapshot_writer_stopped")

    async def _flush_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.flush_interval_seconds)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("snapshot_writer_error")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "dirty": self._dirty,
            "degraded": self.degraded,
            "consecutive_failures": self._failures,
        }
