"""GC Scheduler - runs reconciliation tasks periodically."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from quay.services.gc.base import GCResult, GCTask
from quay.services.gc.coordinator import GCCoordinator, NoopCoordinator
from quay.utils.datetime import utcnow

if TYPE_CHECKING:
    from quay.config import GCConfig

logger = structlog.get_logger()


class GCScheduler:
    """Scheduler for GC tasks.

    Tasks run serially in list order. A failing task is recorded and the
    cycle continues with the next one. run_once() and the background loop
    share a lock, so cycles never overlap within one process.

    Usage:
        scheduler = GCScheduler(tasks=[...], config=settings.gc)
        await scheduler.run_once()
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(
        self,
        tasks: list[GCTask],
        config: "GCConfig",
        coordinator: GCCoordinator | None = None,
    ) -> None:
        self._tasks = tasks
        self._config = config
        self._coordinator = coordinator or NoopCoordinator()
        self._log = logger.bind(service="gc_scheduler")

        self._running = False
        self._task: asyncio.Task | None = None
        self._run_lock = asyncio.Lock()

        self._last_run_at: datetime | None = None
        self._last_results: list[GCResult] = []

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    @property
    def last_results(self) -> list[GCResult]:
        return list(self._last_results)

    @property
    def is_cycle_in_progress(self) -> bool:
        return self._run_lock.locked()

    async def run_once(self) -> list[GCResult]:
        """Run one cycle now, waiting for an in-progress cycle first."""
        async with self._run_lock:
            results = await self._run_cycle()
            self._last_run_at = utcnow()
            self._last_results = results
            return results

    async def _build_tasks(self) -> list[GCTask]:
        return list(self._tasks)

    async def _run_cycle(self) -> list[GCResult]:
        self._log.info("gc.cycle.start")
        results: list[GCResult] = []

        async with self._coordinator.acquire() as acquired:
            if not acquired:
                self._log.info("gc.cycle.skipped", reason="coordination_lock_not_acquired")
                return results

            for task in await self._build_tasks():
                results.append(await self._run_task(task))

        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results

    async def _run_task(self, task: GCTask) -> GCResult:
        """Run one task; an exception becomes an error entry."""
        self._log.info("gc.task.start", task=task.name)
        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("gc.task.failed", task=task.name, error=str(e))
            result = GCResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

        result.task_name = task.name
        self._log.info(
            "gc.task.complete",
            task=task.name,
            cleaned=result.cleaned_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        for error in result.errors:
            self._log.warning("gc.task.item_error", task=task.name, error=error)
        return result

    async def start(self) -> None:
        """Start the background loop (every config.interval_seconds)."""
        if self._running:
            self._log.warning("gc.scheduler.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._background_loop())
        self._log.info("gc.scheduler.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        """Stop the background loop."""
        if not self._running:
            return

        self._log.info("gc.scheduler.stopping")
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._log.info("gc.scheduler.stopped")

    async def _background_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("gc.scheduler.cycle_error", error=str(e))

            try:
                await asyncio.sleep(self._config.interval_seconds)
            except asyncio.CancelledError:
                break
