import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import ManualScheduler  # noqa: E402
from temphost.abuse import VELOCITY_BAN_REASON, AbuseGuard  # noqa: E402
from temphost.settings import BAN_DURATION_SECONDS, SLOWDOWN_WINDOW_SECONDS  # noqa: E402

CLIENT = "203.0.113.7"


class AbuseGuardTests(unittest.TestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.guard = AbuseGuard(self.scheduler)

    def test_unknown_client_is_allowed(self):
        self.assertIsNone(self.guard.check_banned(CLIENT))

    def test_upload_limit_bans_on_third_request_in_window(self):
        self.assertIsNone(self.guard.enforce_rate_limit(CLIENT, 5, 2))
        self.scheduler.advance(1)
        self.assertIsNone(self.guard.enforce_rate_limit(CLIENT, 5, 2))
        self.scheduler.advance(1)
        ban = self.guard.enforce_rate_limit(CLIENT, 5, 2)

        self.assertIsNotNone(ban)
        self.assertEqual(ban.reason, "Rate limit exceeded (2 requests/5s)")
        self.assertIs(self.guard.check_banned(CLIENT), ban)
        self.assertEqual(ban.expires_at, ban.banned_at + BAN_DURATION_SECONDS)

    def test_requests_spread_outside_window_are_allowed(self):
        for _ in range(5):
            self.assertIsNone(self.guard.enforce_rate_limit(CLIENT, 5, 2))
            self.scheduler.advance(3)
        self.assertIsNone(self.guard.check_banned(CLIENT))

    def test_rate_limit_scopes_are_independent(self):
        self.guard.enforce_rate_limit(CLIENT, 5, 2, scope="upload")
        self.guard.enforce_rate_limit(CLIENT, 5, 2, scope="upload")
        self.assertIsNone(self.guard.enforce_rate_limit(CLIENT, 5, 2, scope="other"))

    def test_velocity_ban_on_thirty_first_request(self):
        for _ in range(30):
            self.assertIsNone(self.guard.record_and_check_velocity(CLIENT))
            self.scheduler.advance(1)
        ban = self.guard.record_and_check_velocity(CLIENT)
        self.assertIsNotNone(ban)
        self.assertEqual(ban.reason, VELOCITY_BAN_REASON)
        self.assertEqual(ban.reason, "Excessive requests (30+ requests/minute)")

    def test_velocity_window_slides(self):
        for _ in range(30):
            self.guard.record_and_check_velocity(CLIENT)
        self.scheduler.advance(60)
        self.assertIsNone(self.guard.record_and_check_velocity(CLIENT))

    def test_clients_are_tracked_separately(self):
        self.guard.enforce_rate_limit(CLIENT, 5, 2)
        self.guard.enforce_rate_limit(CLIENT, 5, 2)
        self.assertIsNone(self.guard.enforce_rate_limit("198.51.100.1", 5, 2))

    def test_scheduled_unban_lifts_ban(self):
        self.guard.ban(CLIENT, "manual")
        self.scheduler.advance(BAN_DURATION_SECONDS - 1)
        self.assertIsNotNone(self.guard.check_banned(CLIENT))
        self.scheduler.advance(1)
        self.assertIsNone(self.guard.check_banned(CLIENT))
        self.assertEqual(self.guard.ban_count(), 0)

    def test_expired_ban_is_evicted_lazily(self):
        ban = self.guard.ban(CLIENT, "manual")
        # Lose the timer so only the lazy check can clear the ban
        ban.unban_handle.cancel()
        self.scheduler.current += BAN_DURATION_SECONDS
        self.assertIsNone(self.guard.check_banned(CLIENT))
        self.assertEqual(self.guard.list_bans(), [])

    def test_reban_cancels_previous_unban_task(self):
        first = self.guard.ban(CLIENT, "first")
        self.scheduler.advance(60 * 60)
        second = self.guard.ban(CLIENT, "second")

        self.assertTrue(first.unban_handle.cancelled)
        # The first ban's expiry passes without lifting the newer ban
        self.scheduler.advance(BAN_DURATION_SECONDS - 60 * 60)
        self.assertIs(self.guard.check_banned(CLIENT), second)

    def test_stale_unban_callback_does_not_lift_newer_ban(self):
        first = self.guard.ban(CLIENT, "first")
        self.scheduler.advance(10)
        second = self.guard.ban(CLIENT, "second")
        self.guard._scheduled_unban(CLIENT, first.expires_at)
        self.assertIs(self.guard.check_banned(CLIENT), second)

    def test_unban(self):
        ban = self.guard.ban(CLIENT, "manual")
        self.assertTrue(self.guard.unban(CLIENT))
        self.assertTrue(ban.unban_handle.cancelled)
        self.assertIsNone(self.guard.check_banned(CLIENT))
        self.assertFalse(self.guard.unban(CLIENT))

    def test_list_bans_orders_by_ban_time_and_serialises(self):
        self.guard.ban("198.51.100.2", "b")
        self.scheduler.advance(5)
        self.guard.ban(CLIENT, "a")

        bans = self.guard.list_bans()
        self.assertEqual([ban.client_id for ban in bans], ["198.51.100.2", CLIENT])

        payload = bans[1].to_dict(self.scheduler.now())
        self.assertEqual(payload["ip"], CLIENT)
        self.assertEqual(payload["reason"], "a")
        self.assertTrue(payload["expiresAt"].endswith("Z"))
        self.assertEqual(payload["expiresIn"], "3 hours, 0 minutes, 0 seconds")

    def test_sweep_expired_and_prune_windows(self):
        ban = self.guard.ban(CLIENT, "manual")
        ban.unban_handle.cancel()
        self.guard.record_and_check_velocity("198.51.100.3")
        self.scheduler.current += BAN_DURATION_SECONDS

        self.assertEqual(self.guard.sweep_expired(), 1)
        self.assertEqual(self.guard.prune_windows(), 1)
        self.assertEqual(self.guard.sweep_expired(), 0)

    def test_slowdown_starts_after_ten_uploads_and_caps_at_five_seconds(self):
        delays = []
        for _ in range(60):
            delays.append(self.guard.slowdown_delay(CLIENT))
            self.scheduler.advance(5)

        self.assertEqual(delays[:10], [0.0] * 10)
        self.assertAlmostEqual(delays[10], 1.1)
        self.assertAlmostEqual(delays[11], 1.2)
        self.assertAlmostEqual(delays[49], 5.0)
        self.assertEqual(delays[50:], [5.0] * 10)
        # Slowing down never bans
        self.assertIsNone(self.guard.check_banned(CLIENT))

    def test_slowdown_window_resets_after_fifteen_minutes(self):
        for _ in range(11):
            self.guard.slowdown_delay(CLIENT)
        self.assertGreater(self.guard.slowdown_delay(CLIENT), 0)
        self.assertEqual(self.guard.slowdown_delay("198.51.100.8"), 0.0)

        self.scheduler.advance(SLOWDOWN_WINDOW_SECONDS)
        self.assertEqual(self.guard.slowdown_delay(CLIENT), 0.0)

    def test_prune_windows_keeps_live_slowdown_history(self):
        self.guard.slowdown_delay(CLIENT)
        self.scheduler.advance(SLOWDOWN_WINDOW_SECONDS - 1)
        self.assertEqual(self.guard.prune_windows(), 0)
        self.scheduler.advance(1)
        self.assertEqual(self.guard.prune_windows(), 1)

    def test_concurrent_violations_produce_a_single_ban(self):
        workers = 12
        barrier = threading.Barrier(workers)
        results = [None] * workers

        def upload(index):
            barrier.wait()
            results[index] = self.guard.enforce_rate_limit(CLIENT, 5, 2)

        with mock.patch.object(self.guard, "ban", wraps=self.guard.ban) as ban:
            threads = [threading.Thread(target=upload, args=(i,)) for i in range(workers)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        ban.assert_called_once()
        bans = [result for result in results if result is not None]
        self.assertEqual(len(bans), workers - 2)
        self.assertTrue(all(result is bans[0] for result in bans))
        self.assertEqual(self.guard.list_bans(), [bans[0]])
        self.assertEqual(len(self.scheduler.pending()), 1)


if __name__ == "__main__":
    unittest.main()
