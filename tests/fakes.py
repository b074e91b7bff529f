"""Deterministic stand-ins for the background scheduler used in tests."""

import itertools
from datetime import datetime, timezone


class FakeTask:
    def __init__(self, scheduler, job_id, when, callback, args, interval=None):
        self._scheduler = scheduler
        self.job_id = job_id
        self.when = when
        self.callback = callback
        self.args = args
        self.interval = interval
        self.cancelled = False
        self.fired = False

    def cancel(self):
        if self.cancelled or (self.fired and self.interval is None):
            return False
        self.cancelled = True
        return True

    def next_run_time(self):
        if self.cancelled or (self.fired and self.interval is None):
            return None
        return datetime.fromtimestamp(self.when, tz=timezone.utc)


class ManualScheduler:
    """Clock that only moves when told to and fires due callbacks in order."""

    def __init__(self, start=1_700_000_000.0):
        self.current = float(start)
        self.tasks = []
        self.running = False
        self._ids = itertools.count()

    def now(self):
        return self.current

    def start(self):
        self.running = True

    def shutdown(self, wait=False):
        self.running = False

    def schedule_at(self, when, callback, *args):
        task = FakeTask(self, f"once-{next(self._ids)}", when, callback, args)
        self.tasks.append(task)
        return task

    def schedule_every(self, seconds, callback, job_id, name=None):
        task = FakeTask(
            self, job_id, self.current + seconds, callback, (), interval=seconds
        )
        self.tasks.append(task)
        return task

    def pending(self):
        return [
            task for task in self.tasks
            if not task.cancelled and not (task.fired and task.interval is None)
        ]

    def run_due(self):
        fired = 0
        for task in sorted(self.pending(), key=lambda item: item.when):
            if task.when > self.current or task.cancelled:
                continue
            task.fired = True
            if task.interval is not None:
                task.when = self.current + task.interval
            task.callback(*task.args)
            fired += 1
        return fired

    def advance(self, seconds):
        self.current += seconds
        return self.run_due()
