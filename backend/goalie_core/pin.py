from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

PIN_PATTERN = re.compile(r"^\d{6}$")


def hash_pin(pin: str, salt: str) -> str:
    return hashlib.sha256((pin + salt).encode("utf-8")).hexdigest()


def generate_pin() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def generate_salt() -> str:
    return secrets.token_hex(16)


def new_pin_hash(pin: str, salt: str | None = None) -> str:
    """Return the stored ``salt:hash`` form of ``pin``."""

    salt = salt or generate_salt()
    return f"{salt}:{hash_pin(pin, salt)}"


def is_valid_pin_format(pin: Any) -> bool:
    return isinstance(pin, str) and bool(PIN_PATTERN.match(pin))


def match_pin(profiles: Iterable[Dict[str, Any]], pin: str) -> Optional[Dict[str, Any]]:
    """Return the first profile whose stored ``salt:hash`` matches ``pin``."""

    for profile in profiles:
        stored = str(profile.get("pin_hash") or "")
        salt, _, expected = stored.partition(":")
        if not salt or not expected:
            continue
        if hmac.compare_digest(hash_pin(pin, salt), expected):
            return profile
    return None


@dataclass
class _Window:
    count: int
    reset_at: float


class PinAttemptLimiter:
    """Counts PIN attempts per key within a fixed window.

    Owned by whoever creates it (the HTTP app keeps one per process) and
    resettable, so tests and multiple app instances do not share hidden state.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def check(self, key: str) -> bool:
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return True
        if window.count >= self.max_attempts:
            return False
        window.count += 1
        return True

    def reset(self) -> None:
        self._windows.clear()
