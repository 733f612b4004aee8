"""
message_gate/core/cooldown.py — Post-submission cooldown timer
Ready → Cooling(until) on a successful send; remaining time is computed from a
monotonic clock on every read, so no polling tick is needed. An optional
one-shot callback is scheduled on the running event loop for observers that
want to know when the form becomes available again.
"""
from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Optional

from message_gate.core import logging as app_logging
from message_gate.models import CooldownPhase, CooldownState

Clock = Callable[[], float]


class CooldownTimer:
    def __init__(
        self,
        duration_ms: int,
        clock: Clock = time.monotonic,
        on_ready: Optional[Callable[[], None]] = None,
    ):
        self.duration_ms = duration_ms
        self._clock = clock
        self._on_ready = on_ready
        self._last_send_time: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def until(self) -> Optional[float]:
        if self._last_send_time is None:
            return None
        return self._last_send_time + self.duration_ms / 1000.0

    def remaining_ms(self) -> int:
        """max(0, duration - (now - last_send)), rounded up to whole ms."""
        until = self.until
        if until is None:
            return 0
        return max(0, math.ceil((until - self._clock()) * 1000))

    @property
    def phase(self) -> CooldownPhase:
        return CooldownPhase.COOLING if self.remaining_ms() > 0 else CooldownPhase.READY

    @property
    def is_cooling(self) -> bool:
        return self.phase == CooldownPhase.COOLING

    def snapshot(self) -> CooldownState:
        remaining = self.remaining_ms()
        return CooldownState(
            last_send_time=self._last_send_time,
            remaining_ms=remaining,
            phase=CooldownPhase.COOLING if remaining > 0 else CooldownPhase.READY,
        )

    # ── Transitions ───────────────────────────────────────────────────────────

    def start(self) -> None:
        """Enter Cooling from now. Called only after a successful submission."""
        self._last_send_time = self._clock()
        app_logging.log_cooldown_event("started", self.duration_ms)
        self._schedule_expiry()

    def cancel(self) -> None:
        """Drop any pending expiry callback (form unmount)."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule_expiry(self) -> None:
        self.cancel()
        if self._on_ready is None or self.duration_ms <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); lazy reads still report the right phase.
            return
        self._handle = loop.call_later(self.duration_ms / 1000.0, self._expired)

    def _expired(self) -> None:
        self._handle = None
        app_logging.log_cooldown_event("expired", self.remaining_ms())
        if self._on_ready is not None:
            self._on_ready()
