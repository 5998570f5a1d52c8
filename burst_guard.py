# burst_guard.py — short-window flood control in front of the daily quota
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

DEFAULT_WINDOW_MS = 15_000
DEFAULT_MAX_MESSAGES = 8
DEFAULT_WARN_COOLDOWN_MS = 30_000
MAX_TRACKED_USERS = 5_000


def _positive_int_env(name: str, default: int) -> int:
    try:
        return max(1, int(os.getenv(name, "")))
    except ValueError:
        return default


@dataclass
class _BurstState:
    window_started_at: int
    message_count: int
    last_warn_at: Optional[int]


@dataclass(frozen=True)
class BurstDecision:
    allowed: bool
    should_warn: bool = False


class BurstGuard:
    """
    Per-sender fixed window counter. State lives in memory only and is lost on
    restart. All access goes through one lock so pruning can run alongside checks.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        warn_cooldown_ms: int = DEFAULT_WARN_COOLDOWN_MS,
        max_tracked: int = MAX_TRACKED_USERS,
    ):
        self.window_ms = max(1, int(window_ms))
        self.max_messages = max(1, int(max_messages))
        self.warn_cooldown_ms = max(1, int(warn_cooldown_ms))
        self.max_tracked = max(1, int(max_tracked))
        self._state: Dict[int, _BurstState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "BurstGuard":
        return cls(
            window_ms=_positive_int_env("BURST_WINDOW_MS", DEFAULT_WINDOW_MS),
            max_messages=_positive_int_env("BURST_MAX_MESSAGES", DEFAULT_MAX_MESSAGES),
            warn_cooldown_ms=_positive_int_env("BURST_WARN_COOLDOWN_MS", DEFAULT_WARN_COOLDOWN_MS),
        )

    def __len__(self) -> int:
        return len(self._state)

    def check(self, user_id: int, now_ms: Optional[int] = None) -> BurstDecision:
        now = int(now_ms if now_ms is not None else time.monotonic() * 1000)
        with self._lock:
            self._prune(now)
            current = self._state.get(user_id)
            if current is None or now - current.window_started_at >= self.window_ms:
                self._state[user_id] = _BurstState(
                    window_started_at=now,
                    message_count=1,
                    last_warn_at=current.last_warn_at if current else None,
                )
                return BurstDecision(allowed=True)

            current.message_count += 1
            if current.message_count <= self.max_messages:
                return BurstDecision(allowed=True)

            last = current.last_warn_at
            should_warn = last is None or now - last >= self.warn_cooldown_ms
            if should_warn:
                current.last_warn_at = now
            return BurstDecision(allowed=False, should_warn=should_warn)

    def _prune(self, now: int) -> None:
        # must hold self._lock
        if len(self._state) <= self.max_tracked:
            return
        stale_after = max(self.window_ms * 4, self.warn_cooldown_ms * 2)
        for user_id in list(self._state):
            state = self._state[user_id]
            if now - max(state.window_started_at, state.last_warn_at or 0) > stale_after:
                del self._state[user_id]
            if len(self._state) <= self.max_tracked:
                break
