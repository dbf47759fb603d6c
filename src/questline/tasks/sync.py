"""Recurring Sync Scheduler.

Three independent interval loops, each starting after its own offset so the
passes do not contend for the same rows:

- full reconciliation against Meetup
- full reconciliation against SwissRPG
- the free-spots pass over the latest successful results of both

Every pass is bounded by a timeout. A timeout or error is logged and the loop
carries on with its next tick.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from questline.config import SyncConfig
from questline.free_spots import EventCollector, FreeSpotsPublisher, publish_free_spots
from questline.reconcile.reconciler import (
    EventReconciler,
    ReconcileSummary,
    run_reconciliation_pass,
)
from questline.sources.base import EventSource, EventSourceAdapter

logger = logging.getLogger(__name__)


@dataclass
class SyncState:
    """Latest successful pass result per source, shared with the free-spots pass."""

    collectors: dict[EventSource, EventCollector] = field(default_factory=dict)
    summaries: dict[EventSource, ReconcileSummary] = field(default_factory=dict)
    last_success: dict[str, datetime] = field(default_factory=dict)

    def record_pass(
        self, source: EventSource, summary: ReconcileSummary, collector: EventCollector
    ) -> None:
        self.collectors[source] = collector
        self.summaries[source] = summary
        self.last_success[str(source)] = datetime.now(UTC)


@dataclass(frozen=True)
class _Loop:
    name: str
    offset_s: float
    run_once: Callable[[], Awaitable[object]]


class RecurringSyncScheduler:
    """Owns the recurring sync tasks; ``start()`` spawns them, ``stop()`` cancels them."""

    def __init__(
        self,
        *,
        config: SyncConfig,
        reconciler: EventReconciler,
        adapters: list[EventSourceAdapter],
        publisher: FreeSpotsPublisher,
        state: SyncState | None = None,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._adapters = {adapter.source: adapter for adapter in adapters}
        self._publisher = publisher
        self.state = state or SyncState()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _offset_for(self, source: EventSource) -> float:
        if source is EventSource.MEETUP:
            return self._config.meetup_offset_s
        return self._config.swissrpg_offset_s

    def _loops(self) -> list[_Loop]:
        loops = [
            _Loop(
                name=f"sync-{source}",
                offset_s=self._offset_for(source),
                run_once=lambda source=source: self.run_source_pass(source),
            )
            for source in self._adapters
        ]
        loops.append(
            _Loop(
                name="free-spots",
                offset_s=self._config.free_spots_offset_s,
                run_once=self.run_free_spots_pass,
            )
        )
        return loops

    def start(self) -> None:
        if self._tasks:
            logger.warning("Sync scheduler already running")
            return
        for loop in self._loops():
            self._tasks.append(asyncio.create_task(self._run_loop(loop), name=loop.name))
        logger.info(
            "Sync scheduler started (interval=%ss, timeout=%ss, loops=%s)",
            self._config.interval_s,
            self._config.timeout_s,
            ", ".join(task.get_name() for task in self._tasks),
        )

    async def stop(self) -> None:
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Sync scheduler stopped")

    async def run_source_pass(self, source: EventSource) -> ReconcileSummary:
        """Run one full reconciliation pass for *source* and record its results."""
        adapter = self._adapters[source]
        summary, collector = await run_reconciliation_pass(adapter, self._reconciler)
        self.state.record_pass(source, summary, collector)
        return summary

    async def run_free_spots_pass(self) -> int:
        collectors = [
            self.state.collectors[source]
            for source in (EventSource.MEETUP, EventSource.SWISSRPG)
            if source in self.state.collectors
        ]
        published = await publish_free_spots(collectors, self._publisher)
        self.state.last_success["free-spots"] = datetime.now(UTC)
        return published

    async def run_with_timeout(self, name: str, run_once: Callable[[], Awaitable[object]]) -> bool:
        """Run one pass bounded by the configured timeout; return whether it succeeded."""
        try:
            await asyncio.wait_for(run_once(), timeout=self._config.timeout_s)
        except TimeoutError:
            logger.warning("%s pass timed out after %ss", name, self._config.timeout_s)
            return False
        except Exception:
            logger.exception("%s pass failed", name)
            return False
        return True

    async def _run_loop(self, loop: _Loop) -> None:
        event_loop = asyncio.get_running_loop()
        try:
            await asyncio.sleep(loop.offset_s)
            while True:
                tick_started = event_loop.time()
                logger.info("Starting %s pass", loop.name)
                await self.run_with_timeout(loop.name, loop.run_once)
                elapsed = event_loop.time() - tick_started
                await asyncio.sleep(max(self._config.interval_s - elapsed, 0))
        except asyncio.CancelledError:
            logger.debug("%s loop cancelled", loop.name)
            raise
