"""Per-client request velocity tracking and temporary IP bans.

A client moves Clean -> RateLimited -> Banned -> Clean. Any limit violation
bans the client for ``BAN_DURATION_SECONDS``; there is no appeal path other
than an explicit :meth:`AbuseGuard.unban`. Separately, uploads past a free
allowance are held back by a growing delay that never bans.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from .scheduling import ScheduledTask
from .settings import (
    BAN_DURATION_SECONDS,
    SLOWDOWN_DELAY_AFTER,
    SLOWDOWN_DELAY_STEP_SECONDS,
    SLOWDOWN_MAX_DELAY_SECONDS,
    SLOWDOWN_WINDOW_SECONDS,
    VELOCITY_LIMIT_REQUESTS,
    VELOCITY_WINDOW_SECONDS,
    format_time_remaining,
    isoformat_utc,
)

logger = logging.getLogger("temphost.abuse")

VELOCITY_BAN_REASON = f"Excessive requests ({VELOCITY_LIMIT_REQUESTS}+ requests/minute)"


@dataclass
class BanRecord:
    client_id: str
    reason: str
    banned_at: float
    expires_at: float
    unban_handle: Optional[ScheduledTask] = field(default=None, repr=False, compare=False)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_dict(self, now: float) -> Dict[str, str]:
        return {
            "ip": self.client_id,
            "reason": self.reason,
            "bannedAt": isoformat_utc(self.banned_at),
            "expiresAt": isoformat_utc(self.expires_at),
            "expiresIn": format_time_remaining(self.remaining_seconds(now)),
        }


class AbuseGuard:
    def __init__(
        self,
        scheduler,
        ban_duration: float = BAN_DURATION_SECONDS,
        velocity_limit: int = VELOCITY_LIMIT_REQUESTS,
        velocity_window: float = VELOCITY_WINDOW_SECONDS,
        slowdown_window: float = SLOWDOWN_WINDOW_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._ban_duration = ban_duration
        self._velocity_limit = velocity_limit
        self._velocity_window = velocity_window
        self._slowdown_window = slowdown_window
        self._bans: Dict[str, BanRecord] = {}
        self._bans_lock = threading.RLock()
        # Keyed by (scope, client_id); velocity uses scope "all", slow-down "slowdown".
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._windows_lock = threading.Lock()

    def check_banned(self, client_id: str) -> Optional[BanRecord]:
        """Return the active ban for *client_id*, or None when allowed."""

        now = self._scheduler.now()
        with self._bans_lock:
            record = self._bans.get(client_id)
            if record is None:
                return None
            if record.is_expired(now):
                self._drop_ban(client_id)
                logger.info("ban_expired_lazily ip=%s", client_id)
                return None
            return record

    def record_and_check_velocity(self, client_id: str) -> Optional[BanRecord]:
        """Count a request against the trailing window; ban on violation."""

        return self._hit(
            ("all", client_id),
            client_id,
            self._velocity_window,
            self._velocity_limit,
            VELOCITY_BAN_REASON,
        )

    def enforce_rate_limit(
        self,
        client_id: str,
        window_seconds: float,
        max_requests: int,
        scope: str = "upload",
    ) -> Optional[BanRecord]:
        """Apply a tighter limit to an expensive operation; ban on violation."""

        reason = f"Rate limit exceeded ({max_requests} requests/{window_seconds:g}s)"
        return self._hit((scope, client_id), client_id, window_seconds, max_requests, reason)

    def slowdown_delay(self, client_id: str) -> float:
        """Count an upload attempt and return how long it should be held back.

        The first ``SLOWDOWN_DELAY_AFTER`` attempts in the window pass
        untouched; after that each attempt waits ``count * step`` seconds,
        capped at ``SLOWDOWN_MAX_DELAY_SECONDS``. Never bans.
        """

        now = self._scheduler.now()
        with self._windows_lock:
            count = self._record(("slowdown", client_id), self._slowdown_window, now)
        if count <= SLOWDOWN_DELAY_AFTER:
            return 0.0
        return min(count * SLOWDOWN_DELAY_STEP_SECONDS, SLOWDOWN_MAX_DELAY_SECONDS)

    def _record(self, key: Tuple[str, str], window_seconds: float, now: float) -> int:
        # Caller holds _windows_lock.
        window = self._windows.setdefault(key, deque())
        while window and now - window[0] >= window_seconds:
            window.popleft()
        window.append(now)
        return len(window)

    def _hit(
        self,
        key: Tuple[str, str],
        client_id: str,
        window_seconds: float,
        max_requests: int,
        reason: str,
    ) -> Optional[BanRecord]:
        now = self._scheduler.now()
        with self._windows_lock:
            count = self._record(key, window_seconds, now)
            if count <= max_requests:
                return None
            active = self.check_banned(client_id)
            if active is not None:
                # One ban per violation burst; in-flight requests share it.
                return active
            logger.warning(
                "rate_violation ip=%s scope=%s count=%d limit=%d window=%s",
                client_id,
                key[0],
                count,
                max_requests,
                window_seconds,
            )
            return self.ban(client_id, reason)

    def ban(self, client_id: str, reason: str) -> BanRecord:
        now = self._scheduler.now()
        expires_at = now + self._ban_duration
        with self._bans_lock:
            previous = self._bans.get(client_id)
            if previous is not None and previous.unban_handle is not None:
                previous.unban_handle.cancel()
            record = BanRecord(
                client_id=client_id,
                reason=reason,
                banned_at=now,
                expires_at=expires_at,
            )
            record.unban_handle = self._scheduler.schedule_at(
                expires_at, self._scheduled_unban, client_id, expires_at
            )
            self._bans[client_id] = record
        logger.warning(
            "ip_banned ip=%s reason=%s until=%s",
            client_id,
            reason,
            isoformat_utc(expires_at),
        )
        return record

    def _scheduled_unban(self, client_id: str, expires_at: float) -> None:
        with self._bans_lock:
            record = self._bans.get(client_id)
            # A re-ban replaces the record; only the matching expiry may lift it.
            if record is None or record.expires_at != expires_at:
                return
            del self._bans[client_id]
        logger.info("ip_unbanned_automatically ip=%s", client_id)

    def _drop_ban(self, client_id: str) -> Optional[BanRecord]:
        record = self._bans.pop(client_id, None)
        if record is not None and record.unban_handle is not None:
            record.unban_handle.cancel()
        return record

    def unban(self, client_id: str) -> bool:
        with self._bans_lock:
            record = self._drop_ban(client_id)
        if record is None:
            return False
        logger.info("ip_unbanned ip=%s", client_id)
        return True

    def list_bans(self, now: Optional[float] = None) -> List[BanRecord]:
        now = self._scheduler.now() if now is None else now
        with self._bans_lock:
            records = [record for record in self._bans.values() if not record.is_expired(now)]
        return sorted(records, key=lambda record: record.banned_at)

    def ban_count(self) -> int:
        return len(self.list_bans())

    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = self._scheduler.now() if now is None else now
        removed = 0
        with self._bans_lock:
            for client_id in [cid for cid, rec in self._bans.items() if rec.is_expired(now)]:
                self._drop_ban(client_id)
                removed += 1
        if removed:
            logger.info("ban_cleanup_completed removed=%d", removed)
        return removed

    def prune_windows(self, now: Optional[float] = None) -> int:
        """Drop windows whose newest entry is older than the widest window."""

        now = self._scheduler.now() if now is None else now
        horizon = max(self._velocity_window, self._slowdown_window, 1.0)
        removed = 0
        with self._windows_lock:
            for key in list(self._windows):
                window = self._windows[key]
                if not window or now - window[-1] >= horizon:
                    del self._windows[key]
                    removed += 1
        return removed
