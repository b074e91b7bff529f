"""Short, shareable file identifiers.

Identifiers are 5-8 alphanumeric characters and never start with a digit.
Issued ids are remembered in an in-memory set so a fresh id does not collide
with a recent one. Once the set grows past ``MAX_TRACKED_IDS`` it is cleared
wholesale: memory stays bounded at the price of a small reuse probability
for very old ids. Callers that need hard uniqueness (the file registry)
check against their own live keys as well.
"""

import random
import re
import secrets
import string
import threading
import time
import uuid
from typing import Dict, List, Optional, Set

MIN_LENGTH = 5
MAX_LENGTH = 8
MAX_ATTEMPTS = 50
MAX_TRACKED_IDS = 10_000

_VALID_ID_PATTERN = re.compile(r"[A-Za-z0-9]{5,8}")
_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def is_valid(value: object) -> bool:
    """Check the identifier shape only; says nothing about existence."""

    if not isinstance(value, str):
        return False
    return _VALID_ID_PATTERN.fullmatch(value) is not None


class ShortIdGenerator:
    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        max_tracked: int = MAX_TRACKED_IDS,
    ) -> None:
        self._used: Set[str] = set()
        self._lock = threading.Lock()
        self._max_attempts = max_attempts
        self._max_tracked = max_tracked

    @staticmethod
    def _resolve_length(length: Optional[int]) -> int:
        if length is None or length < MIN_LENGTH or length > MAX_LENGTH:
            return random.randint(MIN_LENGTH, MAX_LENGTH)
        return length

    @staticmethod
    def _candidate(length: int) -> str:
        short_id = uuid.uuid4().hex[:length]
        if short_id[0].isdigit():
            short_id = secrets.choice(string.ascii_lowercase) + short_id[1:]
        return short_id

    @staticmethod
    def _fallback(length: int) -> str:
        stamp = _base36(int(time.time() * 1000))
        suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(2))
        fallback_id = (stamp + suffix)[:length].ljust(length, "x")
        if fallback_id[0].isdigit():
            fallback_id = "f" + fallback_id[1:]
        return fallback_id

    def _remember(self, short_id: str) -> None:
        self._used.add(short_id)
        if len(self._used) > self._max_tracked:
            self._used.clear()

    def generate(self, length: Optional[int] = None) -> str:
        id_length = self._resolve_length(length)
        with self._lock:
            for _ in range(self._max_attempts):
                candidate = self._candidate(id_length)
                if candidate not in self._used:
                    self._remember(candidate)
                    return candidate

            # Every attempt collided: trade uniqueness for availability.
            fallback_id = self._fallback(id_length)
            self._remember(fallback_id)
            return fallback_id

    def generate_batch(self, count: int = 10, length: Optional[int] = None) -> List[str]:
        return [self.generate(length) for _ in range(max(0, count))]

    def release(self, short_id: str) -> None:
        with self._lock:
            self._used.discard(short_id)

    def is_tracked(self, short_id: str) -> bool:
        with self._lock:
            return short_id in self._used

    def is_valid(self, value: object) -> bool:
        return is_valid(value)

    def stats(self) -> Dict[str, object]:
        with self._lock:
            ids = list(self._used)
        distribution: Dict[int, int] = {}
        for short_id in ids:
            distribution[len(short_id)] = distribution.get(len(short_id), 0) + 1
        return {
            "total_used": len(ids),
            "length_distribution": distribution,
            "sample_ids": ids[:5],
        }
