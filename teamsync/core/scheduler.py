"""Interval runner for unattended sync cycles."""

import asyncio
from typing import Optional

import structlog

from teamsync.clients.exceptions import StoreError, SyncInProgressError
from teamsync.core.engine import SyncEngine

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """Runs ``SyncEngine.run`` every ``interval_seconds`` until stopped.

    A tick is skipped when auto-sync has been switched off in the store or
    when another run still holds the execution slot. Failed cycles are logged
    and the loop carries on.
    """

    def __init__(self, engine: SyncEngine, interval_seconds: float, run_on_start: bool = True) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.ticks = 0
        self._logger = logger.bind(component="SyncScheduler")

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    async def tick(self) -> bool:
        """Run one cycle if allowed. Returns True when a cycle ran to completion."""
        self.ticks += 1
        try:
            if not self.engine.store.auto_sync_enabled():
                self._logger.info("Auto-sync disabled, skipping tick")
                return False
        except StoreError as e:
            self._logger.error("Reading auto-sync setting failed", error=str(e))
            return False

        try:
            result = await self.engine.run(wait=False)
        except SyncInProgressError as e:
            self._logger.info("Sync already running, skipping tick", holder=e.holder)
            return False
        except Exception as e:
            self._logger.error("Scheduled sync failed", error=str(e), error_type=type(e).__name__)
            return False

        self._logger.info(
            "Scheduled sync finished",
            applied=result.applied,
            skipped=result.skipped,
        )
        return True

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Loop until ``stop_event`` is set. Returns immediately when disabled."""
        if not self.enabled:
            self._logger.info("Scheduler disabled", interval_seconds=self.interval_seconds)
            return

        stop_event = stop_event or asyncio.Event()
        self._logger.info("Scheduler started", interval_seconds=self.interval_seconds)

        if self.run_on_start:
            await self.tick()

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.tick()

        self._logger.info("Scheduler stopped", ticks=self.ticks)
