"""
Server side of the exam clock.

The client runs the countdown and pushes its remaining time with every
checkpoint. The server never extends that value: a report is clamped to what
is physically left since ``started_at``, and attempts that outlive their
duration plus a grace period are submitted by the reaper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from exam_engine.models import Attempt, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClampResult:
    value: int
    reported: int
    allowed: int
    excess: int

    @property
    def clamped(self) -> bool:
        return self.value != self.reported


class SessionClock:
    def __init__(self, now: Optional[Callable[[], datetime]] = None, skew_tolerance_seconds: int = 5) -> None:
        self._now = now or utcnow
        self.skew_tolerance_seconds = skew_tolerance_seconds

    def now(self) -> datetime:
        return self._now()

    def elapsed_seconds(self, attempt: Attempt, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        return max(0, int((now - attempt.started_at).total_seconds()))

    def physical_remaining(self, attempt: Attempt, now: Optional[datetime] = None) -> int:
        return max(0, attempt.duration_seconds - self.elapsed_seconds(attempt, now))

    def deadline(self, attempt: Attempt, grace_seconds: int = 0) -> datetime:
        return attempt.started_at + timedelta(seconds=attempt.duration_seconds + grace_seconds)

    def is_expired(self, attempt: Attempt, grace_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        now = now or self.now()
        return now >= self.deadline(attempt, grace_seconds)

    def clamp(self, attempt: Attempt, reported: int, now: Optional[datetime] = None) -> ClampResult:
        """Bound a client-reported remaining time.

        The result never exceeds the physical remaining time or the last stored
        value, so remaining time only decreases while the attempt is running.
        """
        physical = self.physical_remaining(attempt, now)
        allowed = min(physical, attempt.time_remaining_seconds)
        reported = max(0, reported)
        value = min(reported, allowed)
        excess = max(0, reported - physical)
        if excess > self.skew_tolerance_seconds:
            logger.warning(
                f"Clock anomaly on attempt {attempt.attempt_id}: client reported {reported}s "
                f"remaining, only {physical}s possible"
            )
        return ClampResult(value=value, reported=reported, allowed=allowed, excess=excess)

    def is_anomaly(self, result: ClampResult) -> bool:
        return result.excess > self.skew_tolerance_seconds
