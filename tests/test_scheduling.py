import sys
import unittest
from pathlib import Path
from unittest import mock

from apscheduler.jobstores.base import JobLookupError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from temphost.scheduling import ScheduledTask, Scheduler  # noqa: E402


class SchedulerTests(unittest.TestCase):
    def setUp(self):
        self.background = mock.MagicMock()
        self.background.running = False
        self.scheduler = Scheduler(self.background)

    def test_schedule_at_registers_date_job(self):
        callback = mock.Mock()
        task = self.scheduler.schedule_at(1_700_000_000.0, callback, "abcde")

        kwargs = self.background.add_job.call_args.kwargs
        self.assertEqual(kwargs["trigger"], "date")
        self.assertEqual(kwargs["id"], task.job_id)
        self.assertEqual(kwargs["run_date"].timestamp(), 1_700_000_000.0)

        # The job body invokes the callback with the given arguments
        kwargs["func"](*kwargs["args"])
        callback.assert_called_once_with("abcde")

    def test_cancelled_task_never_fires(self):
        callback = mock.Mock()
        task = self.scheduler.schedule_at(1_700_000_000.0, callback)
        kwargs = self.background.add_job.call_args.kwargs

        self.assertTrue(task.cancel())
        self.assertFalse(task.cancel())
        self.background.remove_job.assert_called_once_with(task.job_id)

        kwargs["func"](*kwargs["args"])
        callback.assert_not_called()

    def test_cancel_after_job_ran_is_a_noop(self):
        self.background.remove_job.side_effect = JobLookupError("gone")
        task = ScheduledTask(self.background, "once-1")
        self.assertFalse(task.cancel())

    def test_callback_failure_is_logged(self):
        task = self.scheduler.schedule_at(1_700_000_000.0, mock.Mock(side_effect=RuntimeError("x")))
        kwargs = self.background.add_job.call_args.kwargs
        with self.assertLogs("temphost.scheduler", level="ERROR"):
            kwargs["func"](*kwargs["args"])
        self.assertFalse(task.cancelled)

    def test_schedule_every_replaces_existing_job(self):
        self.scheduler.schedule_every(3600, mock.Mock(), job_id="sweep", name="Sweep")
        kwargs = self.background.add_job.call_args.kwargs
        self.assertEqual(kwargs["trigger"], "interval")
        self.assertEqual(kwargs["seconds"], 3600)
        self.assertTrue(kwargs["replace_existing"])
        self.assertTrue(kwargs["coalesce"])

    def test_start_and_shutdown(self):
        self.scheduler.start()
        self.background.start.assert_called_once()
        self.background.running = True
        self.scheduler.shutdown()
        self.background.shutdown.assert_called_once_with(wait=False)


if __name__ == "__main__":
    unittest.main()
