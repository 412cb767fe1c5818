"""
Session Clock.

Countdown/elapsed-time source for a session. The clock never schedules
anything itself: a driver (``SessionRunner`` or a test) calls ``tick()``
once per period, and every reading is recomputed from the time source, so
missed or late ticks reconcile instead of accumulating drift.

Guarantees:
- elapsed readings never decrease, across pause/resume cycles
- paused time is never counted
- each threshold callback fires at most once per session
- the expiry callback fires exactly once
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from loguru import logger

TimeSource = Callable[[], float]


@dataclass(frozen=True)
class TickResult:
    """Outcome of one tick."""

    elapsed: float
    remaining: float | None
    crossed: tuple[float, ...] = ()
    expired: bool = False
    counted: bool = True  # False when the clock was paused or stopped


@dataclass
class _Threshold:
    fraction: float
    callbacks: list[Callable[[float, float], None]] = field(default_factory=list)


class SessionClock:
    """
    Monotonic countdown / stopwatch.

    ``duration`` None means count-up only (practice mode): no thresholds,
    no expiry.
    """

    def __init__(self, time_source: TimeSource | None = None):
        self._now = time_source or time.monotonic
        self.duration: float | None = None

        self._accumulated = 0.0  # Active seconds banked before the current run
        self._resumed_at: float | None = None  # Time-source instant of the current run
        self._last_elapsed = 0.0
        self._started = False
        self._expired = False
        self._stopped = False

        self._thresholds: dict[float, _Threshold] = {}
        self._fired: set[float] = set()
        self._tick_callbacks: list[Callable[[float], None]] = []
        self._expired_callbacks: list[Callable[[], None]] = []

    # =========================================================================
    # Registration
    # =========================================================================

    def on_tick(self, callback: Callable[[float], None]) -> None:
        """Call ``callback(elapsed)`` on every counted tick, after threshold callbacks."""
        self._tick_callbacks.append(callback)

    def on_threshold(self, fraction: float, callback: Callable[[float, float], None]) -> None:
        """
        Call ``callback(fraction, remaining)`` once when remaining time drops
        to ``fraction`` of the duration.

        Args:
            fraction: Remaining-time fraction, strictly between 0 and 1
            callback: Receives the fraction and the remaining seconds
        """
        if not 0 < fraction < 1:
            raise ValueError(f"Threshold fraction must be between 0 and 1, got {fraction}")
        self._thresholds.setdefault(fraction, _Threshold(fraction)).callbacks.append(callback)
        if self._started and self._is_crossed(fraction, self.remaining()):
            # Already behind us: registering late must not replay a warning
            self._fired.add(fraction)

    def on_expired(self, callback: Callable[[], None]) -> None:
        self._expired_callbacks.append(callback)

    # =========================================================================
    # Control
    # =========================================================================

    def start(
        self,
        duration_seconds: float | None,
        elapsed: float = 0.0,
        fired: Iterable[float] = (),
        paused: bool = False,
        at: float | None = None,
    ) -> None:
        """
        Start (or restore) the clock.

        Args:
            duration_seconds: Countdown length, or None for count-up only
            elapsed: Active seconds already used (when resuming a snapshot)
            fired: Threshold fractions that already fired
            paused: Restore in the paused state
            at: Time-source instant to start from (defaults to now)
        """
        if duration_seconds is not None and duration_seconds <= 0:
            raise ValueError("Clock duration must be positive")

        self.duration = duration_seconds
        self._accumulated = max(0.0, elapsed)
        if self.duration is not None:
            self._accumulated = min(self._accumulated, self.duration)
        self._last_elapsed = self._accumulated
        self._resumed_at = None if paused else (self._now() if at is None else at)
        self._started = True
        self._stopped = False
        self._expired = False

        self._fired = set(fired)
        remaining = self.remaining()
        for fraction in self._thresholds:
            if self._is_crossed(fraction, remaining):
                self._fired.add(fraction)

    def pause(self, at: float | None = None) -> bool:
        """
        Freeze the clock. Idempotent.

        Returns:
            True if the clock was running and is now paused
        """
        if self._resumed_at is None:
            return False
        self._accumulated = max(self._last_elapsed, self._reading(self._now() if at is None else at))
        self._last_elapsed = self._accumulated
        self._resumed_at = None
        return True

    def resume(self, at: float | None = None) -> bool:
        """
        Restart from the frozen reading. Idempotent.

        Returns:
            True if the clock was paused and is now running
        """
        if not self._started or self._stopped or self._expired or self._resumed_at is not None:
            return False
        self._resumed_at = self._now() if at is None else at
        return True

    def stop(self, at: float | None = None) -> None:
        """Freeze permanently (session finished)."""
        self.pause(at)
        self._stopped = True

    # =========================================================================
    # Readings
    # =========================================================================

    @property
    def started(self) -> bool:
        return self._started

    @property
    def running(self) -> bool:
        return self._resumed_at is not None

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def fired_thresholds(self) -> frozenset[float]:
        return frozenset(self._fired)

    def elapsed(self, at: float | None = None) -> float:
        """Active seconds used so far (never decreases)."""
        if self._resumed_at is None:
            return self._last_elapsed
        return max(self._last_elapsed, self._reading(self._now() if at is None else at))

    def remaining(self, at: float | None = None) -> float | None:
        """Seconds left, or None for a count-up clock."""
        if self.duration is None:
            return None
        return max(0.0, self.duration - self.elapsed(at))

    def deadline(self) -> float | None:
        """Time-source instant at which the countdown reaches zero (None unless counting down)."""
        if self.duration is None or self._resumed_at is None or self._expired:
            return None
        return self._resumed_at + (self.duration - self._accumulated)

    def _reading(self, now: float) -> float:
        reading = self._accumulated
        if self._resumed_at is not None:
            reading += max(0.0, now - self._resumed_at)
        if self.duration is not None:
            reading = min(reading, self.duration)
        return reading

    def _is_crossed(self, fraction: float, remaining: float | None) -> bool:
        if self.duration is None or remaining is None:
            return False
        return remaining <= fraction * self.duration

    # =========================================================================
    # Ticking
    # =========================================================================

    def tick(self, now: float | None = None, expire_at_deadline: bool = True) -> TickResult:
        """
        Advance to ``now`` (defaults to the time source) and fire callbacks.

        A tick stamped earlier than a previous one reports the previous
        reading rather than going backwards.

        Args:
            now: Time-source instant to advance to
            expire_at_deadline: Expire when ``now`` equals the deadline. When
                False, expiry needs ``now`` strictly past it, so a command
                stamped at the deadline instant is reconciled without
                expiring and the next tick performs the zero crossing.
        """
        if self._resumed_at is None or self._expired:
            return TickResult(
                elapsed=self._last_elapsed,
                remaining=self.remaining(),
                counted=False,
            )

        instant = self._now() if now is None else now
        deadline = self.deadline()
        elapsed = self.elapsed(instant)
        self._last_elapsed = elapsed
        remaining = self.remaining()

        crossed = []
        for fraction in sorted(self._thresholds, reverse=True):
            if fraction in self._fired or not self._is_crossed(fraction, remaining):
                continue
            self._fired.add(fraction)
            crossed.append(fraction)
            for callback in self._thresholds[fraction].callbacks:
                callback(fraction, remaining)

        for callback in self._tick_callbacks:
            callback(elapsed)

        expired = False
        reached = remaining is not None and remaining <= 0
        if reached and (expire_at_deadline or deadline is None or instant > deadline):
            expired = True
            self._expired = True
            self._accumulated = self.duration or elapsed
            self._resumed_at = None
            logger.debug(f"Clock expired after {elapsed:.1f}s")
            for callback in self._expired_callbacks:
                callback()

        return TickResult(
            elapsed=elapsed,
            remaining=remaining,
            crossed=tuple(crossed),
            expired=expired,
        )
