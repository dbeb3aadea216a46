"""
Periodic automatic backups.

An explicitly owned asyncio task ticks every ``interval_seconds`` and backs
up every project whose cooldown has elapsed. A tick that arrives while the
previous sweep is still running is skipped, not queued.
"""

import asyncio
import logging
from typing import Any

from ..errors import CooldownActiveError
from .backup_manager import BackupManager

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Owns the automatic backup loop for one BackupManager."""

    def __init__(
        self,
        manager: BackupManager,
        interval_seconds: float = 600.0,
        stop_event: asyncio.Event | None = None,
    ):
        """
        Args:
            manager: Backup manager to drive
            interval_seconds: Seconds between sweeps
            stop_event: Setting this event stops the loop; created if omitted
        """
        self._manager = manager
        self._interval = interval_seconds
        self._owns_stop_event = stop_event is None
        self._stop_event = stop_event if stop_event is not None else asyncio.Event()
        self._task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._sweeping = False
        self._stats = {"sweeps": 0, "skipped": 0, "backups_created": 0, "errors": 0}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweeping

    async def start(self) -> None:
        """Start the background loop."""
        if self.running:
            logger.warning("Backup scheduler already running")
            return
        if self._owns_stop_event:
            # A caller-supplied event stays set once the caller has set it.
            self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Backup scheduler started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight sweep to finish."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._sweep_task:
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Backup scheduler stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass
            self._tick()

    def _tick(self) -> None:
        if self._sweeping:
            self._stats["skipped"] += 1
            logger.info("Skipping backup sweep: previous sweep still running")
            return
        self._sweep_task = asyncio.create_task(self.run_sweep())

    async def run_sweep(self) -> int | None:
        """
        Back up every project that is outside its cooldown.

        Returns:
            Number of backups created, or None if a sweep was already running
        """
        if self._sweeping:
            self._stats["skipped"] += 1
            return None

        self._sweeping = True
        created = 0
        try:
            projects = await self._manager.store.list_projects()
            for project in projects:
                if self._stop_event.is_set():
                    break
                if not self._manager.can_backup(project):
                    continue
                try:
                    await self._manager.backup(project)
                    created += 1
                except CooldownActiveError:
                    continue
                except Exception as e:
                    self._stats["errors"] += 1
                    logger.warning(f"Automatic backup failed for project '{project}': {e}")
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"Backup sweep failed: {e}")
        finally:
            self._sweeping = False
            self._stats["sweeps"] += 1
            self._stats["backups_created"] += created

        if created:
            logger.info(f"Backup sweep created {created} backups")
        return created

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "sweep_in_progress": self._sweeping,
            **self._stats,
        }
