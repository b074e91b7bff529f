import logging
from typing import Dict, List, Optional

from .settings import DEFAULT_REAPER_INTERVAL_MINUTES

logger = logging.getLogger("temphost.reaper")

FILE_SWEEP_JOB_ID = "sweep_expired_files"
BAN_SWEEP_JOB_ID = "sweep_expired_bans"


class PeriodicReaper:
    """Interval sweeps that reconcile state independent of per-record timers.

    Scheduled deletions and unbans are best effort; a lost timer is caught
    here on the next pass.
    """

    def __init__(
        self,
        registry,
        guard,
        blob_store,
        scheduler,
        interval_minutes: int = DEFAULT_REAPER_INTERVAL_MINUTES,
    ) -> None:
        self._registry = registry
        self._guard = guard
        self._blobs = blob_store
        self._scheduler = scheduler
        self.interval_seconds = max(1, int(interval_minutes)) * 60
        self._tasks: List = []

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            self._scheduler.schedule_every(
                self.interval_seconds,
                self.sweep_files,
                job_id=FILE_SWEEP_JOB_ID,
                name="Sweep expired files",
            ),
            self._scheduler.schedule_every(
                self.interval_seconds,
                self.sweep_bans,
                job_id=BAN_SWEEP_JOB_ID,
                name="Sweep expired bans",
            ),
        ]
        logger.info("reaper_started interval_seconds=%d", self.interval_seconds)

    def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    @property
    def tasks(self) -> List:
        return list(self._tasks)

    def sweep_files(self, now: Optional[float] = None) -> Dict[str, int]:
        now = self._scheduler.now() if now is None else now
        result = {"expired_files": 0, "orphaned_blobs": 0, "temp_files": 0}
        try:
            result["expired_files"] = self._registry.sweep_expired(now)
            result["orphaned_blobs"] = self._blobs.cleanup_orphans(
                self._registry.storage_paths(), now=now
            )
            result["temp_files"] = self._blobs.cleanup_temp_files(now=now)
        except Exception:
            logger.exception("file_sweep_failed")
        if any(result.values()):
            logger.info(
                "file_sweep_completed expired=%d orphaned=%d temp=%d",
                result["expired_files"],
                result["orphaned_blobs"],
                result["temp_files"],
            )
        return result

    def sweep_bans(self, now: Optional[float] = None) -> Dict[str, int]:
        now = self._scheduler.now() if now is None else now
        result = {"expired_bans": 0, "idle_windows": 0}
        try:
            result["expired_bans"] = self._guard.sweep_expired(now)
            result["idle_windows"] = self._guard.prune_windows(now)
        except Exception:
            logger.exception("ban_sweep_failed")
        if result["expired_bans"]:
            logger.info("ban_sweep_completed unbanned=%d", result["expired_bans"])
        return result

    def run_once(self, now: Optional[float] = None) -> Dict[str, int]:
        result = self.sweep_files(now)
        result.update(self.sweep_bans(now))
        return result
