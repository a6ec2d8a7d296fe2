"""
auth/lockout.py -- Per-account brute-force lockout state machine.

States: Open (locked_until is None or in the past) and Locked(until).

The policy is pure: it inspects and transforms LockoutState values and never
touches a store. AuthEngine persists every transition with a compare-and-swap
so two concurrent failures cannot both read attempts=4 and both write 5.

Inspection never clears the counter. An expired lock still shows its old
attempt count until the next login outcome: a success resets to zero, a
failure restarts the count at one.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import LockoutState

DEFAULT_THRESHOLD = 5
DEFAULT_LOCK_DURATION = timedelta(hours=2)


@dataclass(frozen=True)
class LockoutDecision:
    """Result of LockoutPolicy.check_allowed().

    retry_after is the number of whole seconds until the lock lifts; zero when
    allowed.
    """

    allowed: bool
    retry_after: int = 0


class LockoutPolicy:
    def __init__(self, threshold: int = DEFAULT_THRESHOLD, lock_duration: timedelta = DEFAULT_LOCK_DURATION) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1.")
        self.threshold = threshold
        self.lock_duration = lock_duration

    def is_locked(self, state: LockoutState, now: datetime) -> bool:
        return state.locked_until is not None and now < state.locked_until

    def check_allowed(self, state: LockoutState, now: datetime) -> LockoutDecision:
        if self.is_locked(state, now):
            remaining = (state.locked_until - now).total_seconds()
            return LockoutDecision(allowed=False, retry_after=max(1, math.ceil(remaining)))
        return LockoutDecision(allowed=True)

    def on_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        """Return the state after one more failed attempt."""
        if state.locked_until is not None and now >= state.locked_until:
            return LockoutState(attempts=1, locked_until=None)
        attempts = state.attempts + 1
        if attempts >= self.threshold:
            return LockoutState(attempts=attempts, locked_until=now + self.lock_duration)
        return LockoutState(attempts=attempts, locked_until=state.locked_until)

    def on_success(self, state: LockoutState) -> LockoutState:
        return LockoutState()
