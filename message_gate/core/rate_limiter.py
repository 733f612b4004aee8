"""
message_gate/core/rate_limiter.py — Sliding-window submission rate limiter
Attempts are tracked per client identifier in an injected RateLimitStore,
scoped to one application instance. Not a security boundary: the identifier
is usually self-reported by the client.
"""
from __future__ import annotations

from typing import Optional

from message_gate.core import logging as app_logging
from message_gate.models import FailureKind, RateLimitConfig

# Shared bucket for clients whose identifier could not be resolved.
UNKNOWN_IDENTIFIER = "unknown"


class RateLimitStore:
    """In-memory identifier → attempt timestamps map. Resets on restart."""

    def __init__(self) -> None:
        self._attempts: dict[str, list[float]] = {}

    def get(self, identifier: str) -> list[float]:
        return list(self._attempts.get(identifier, []))

    def put(self, identifier: str, timestamps: list[float]) -> None:
        if timestamps:
            self._attempts[identifier] = timestamps
        else:
            self._attempts.pop(identifier, None)

    def clear(self) -> None:
        self._attempts.clear()


class RateLimiter:
    """
    Sliding window: at most `count` recorded attempts per identifier within
    the trailing `window_ms`. config=None disables limiting entirely.
    """

    def __init__(self, store: RateLimitStore, config: Optional[RateLimitConfig]):
        self.store = store
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config is not None

    def _recent(self, identifier: str, now: float) -> list[float]:
        window = self.config.window_ms / 1000.0
        return [ts for ts in self.store.get(identifier) if now - ts < window]

    def check_and_record(self, identifier: str, now: float) -> bool:
        """
        Prune entries older than the window, then either refuse (limit hit,
        nothing recorded) or record `now` and allow. `now` is monotonic seconds.
        """
        if not self.enabled:
            return True

        recent = self._recent(identifier, now)
        if len(recent) >= self.config.count:
            self.store.put(identifier, recent)
            app_logging.log_rejection("rate_limiter", FailureKind.RATE_LIMITED.value, {
                "identifier": identifier,
                "attempts_in_window": len(recent),
            })
            return False

        recent.append(now)
        self.store.put(identifier, recent)
        return True

    def remaining_attempts(self, identifier: str, now: float) -> Optional[int]:
        """Attempts still allowed in the current window; None when disabled."""
        if not self.enabled:
            return None
        return max(0, self.config.count - len(self._recent(identifier, now)))

    def reset(self, identifier: Optional[str] = None) -> None:
        if identifier is None:
            self.store.clear()
        else:
            self.store.put(identifier, [])
