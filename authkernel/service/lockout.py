from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from authkernel.storage.models import User


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    FAILURE = "failure"
    SUCCESS = "success"


@dataclass(frozen=True)
class LockoutDecision:
    locked: bool
    failed_attempts: int
    lockout_until: Optional[datetime]
    newly_locked: bool = False
    retry_after_seconds: int = 0


class LockoutPolicy:
    """Pure lock/unlock decisions for password attempts.

    The policy never reads or writes storage. Callers pass the user row and a
    timestamp from the same clock used everywhere else, then persist the
    returned counter and lockout expiry.
    """

    def __init__(
        self, threshold: int = 5, duration: timedelta = timedelta(minutes=15)
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be positive")
        self.threshold = threshold
        self.duration = duration

    def evaluate(
        self, user: User, outcome: AttemptOutcome, now: datetime
    ) -> LockoutDecision:
        if outcome == AttemptOutcome.SUCCESS:
            return LockoutDecision(locked=False, failed_attempts=0, lockout_until=None)
        if outcome == AttemptOutcome.FAILURE:
            return self._register_failure(user, now)
        return self._check(user, now)

    def _check(self, user: User, now: datetime) -> LockoutDecision:
        until = user.lockout_until
        if until is not None and until > now:
            return LockoutDecision(
                locked=True,
                failed_attempts=user.failed_login_attempts,
                lockout_until=until,
                retry_after_seconds=max(1, math.ceil((until - now).total_seconds())),
            )
        return LockoutDecision(
            locked=False,
            failed_attempts=user.failed_login_attempts,
            lockout_until=until,
        )

    def _register_failure(self, user: User, now: datetime) -> LockoutDecision:
        attempts = user.failed_login_attempts + 1
        if attempts >= self.threshold:
            until = now + self.duration
            return LockoutDecision(
                locked=True,
                failed_attempts=attempts,
                lockout_until=until,
                newly_locked=True,
                retry_after_seconds=int(self.duration.total_seconds()),
            )
        return LockoutDecision(locked=False, failed_attempts=attempts, lockout_until=None)
