import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("temphost.scheduler")


class ScheduledTask:
    """Cancellable handle for a job registered with the scheduler."""

    def __init__(self, scheduler: BackgroundScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self.job_id = job_id
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Remove the job; returns False when it already ran or was cancelled."""

        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            return False
        return True

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.job_id)
        return job.next_run_time if job is not None else None


class Scheduler:
    """Wall clock plus one-shot and interval jobs on a background thread."""

    def __init__(self, background: Optional[BackgroundScheduler] = None) -> None:
        self._scheduler = background or BackgroundScheduler(daemon=True, timezone=timezone.utc)

    def now(self) -> float:
        return time.time()

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("scheduler_started")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("scheduler_stopped")

    def schedule_at(self, when: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        job_id = f"once-{uuid.uuid4().hex}"
        task = ScheduledTask(self._scheduler, job_id)
        self._scheduler.add_job(
            func=self._run_once,
            trigger="date",
            run_date=datetime.fromtimestamp(when, tz=timezone.utc),
            args=(task, callback, args),
            id=job_id,
            misfire_grace_time=None,
        )
        return task

    def schedule_every(
        self,
        seconds: float,
        callback: Callable[[], Any],
        job_id: str,
        name: Optional[str] = None,
    ) -> ScheduledTask:
        self._scheduler.add_job(
            func=callback,
            trigger="interval",
            seconds=max(1, seconds),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            coalesce=True,
        )
        return ScheduledTask(self._scheduler, job_id)

    @staticmethod
    def _run_once(task: ScheduledTask, callback: Callable[..., Any], args: tuple) -> None:
        # A job already handed to the executor can still arrive after cancel().
        if task.cancelled:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("scheduled_task_failed job_id=%s", task.job_id)
