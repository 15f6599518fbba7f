"""Retention sweeping for finished builds.

This module handles:
- Evicting terminal build records older than the retention horizon
- Best-effort removal of the images those builds produced
- The periodic background task that runs the sweep
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from bundle_imagegen.builds.service import BuildOrchestrator
from bundle_imagegen.errors import ExternalToolUnavailableError, RuntimeCommandError

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Manage the background task that evicts expired build records.

    Args:
        orchestrator: Orchestrator owning the records.
        retention: Age (seconds since ``ended_at``) after which a finished
            build is evicted.
        interval: Seconds between sweeps.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        retention: float | None = None,
        interval: float | None = None,
    ) -> None:
        settings = orchestrator.settings
        self.orchestrator = orchestrator
        self.retention = retention if retention is not None else settings.retention
        self.interval = interval if interval is not None else settings.cleanup_interval
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        """Whether the background loop is active."""
        return self._task is not None and not self._task.done()

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Evict expired terminal builds once.

        Pending and building records are never touched. Image removal
        failures are logged and do not stop the sweep.

        Args:
            now: Reference time (defaults to the current UTC time).

        Returns:
            IDs of the evicted builds.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        horizon = timedelta(seconds=self.retention)

        removed: list[str] = []
        for record in self.orchestrator.records():
            if not record.is_terminal or record.ended_at is None:
                continue
            if now - record.ended_at <= horizon:
                continue

            if self.orchestrator.remove_record(record.id) is None:
                continue
            removed.append(record.id)

            if record.image_id:
                try:
                    await self.orchestrator.supervisor.remove_image(record.image_id)
                    logger.info("Removed image %s of build %s", record.image_id, record.id)
                except (RuntimeCommandError, ExternalToolUnavailableError) as e:
                    logger.warning(
                        "Failed to remove image %s of build %s: %s",
                        record.image_id,
                        record.id,
                        e,
                    )

        if removed:
            logger.info("Evicted %d expired build(s)", len(removed))
        return removed

    async def start(self) -> None:
        """Spawn the background sweep loop."""
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._stop_event)
        )
        logger.info(
            "Retention sweeper started (interval %ss, retention %ss)",
            self.interval,
            self.retention,
        )

    async def stop(self) -> None:
        """Signal the background loop to exit and wait for completion."""
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        task = self._task
        try:
            await task
        finally:
            self._task = None
            self._stop_event = None

    async def _run(self, stop_event: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except TimeoutError:
                pass
            try:
                await self.sweep()
            except Exception:
                logger.exception("Retention sweep failed")


__all__ = ["RetentionSweeper"]
