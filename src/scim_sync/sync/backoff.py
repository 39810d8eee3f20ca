"""
Poll backoff state machine.

Idle -> Polling -> (success) Idle
                -> (failure) Backoff -> Polling ...

The policy only computes transitions and delays from an explicit ``now``; the
polling service owns the timers that drive it.
"""

from datetime import datetime
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

from scim_sync.sync.enums import PollState


class BackoffDecision(BaseModel):
    """Outcome of recording one failure."""

    delay_seconds: float
    next_poll: datetime
    in_cooldown: bool
    alert: bool  # True exactly once, when failures reach the alert threshold


class BackoffPolicy:
    """Exponential backoff bounded by a maximum delay, with a cool-down after repeated failures."""

    def __init__(
        self,
        base_delay_seconds: float = 30,
        max_delay_seconds: float = 300,
        max_retry_attempts: int = 3,
        alert_after_consecutive_failures: int = 3,
    ):
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_retry_attempts = max_retry_attempts
        self.alert_after_consecutive_failures = alert_after_consecutive_failures

    def delay_for(self, consecutive_failures: int) -> float:
        """min(base * 2^(n-1), max); zero when there are no failures."""
        if consecutive_failures <= 0:
            return 0.0
        return min(self.base_delay_seconds * (2 ** (consecutive_failures - 1)), self.max_delay_seconds)

    @staticmethod
    def on_poll_started(schedule, now: datetime) -> None:
        schedule.state = PollState.POLLING
        schedule.last_poll = now

    @staticmethod
    def on_success(schedule, now: datetime) -> None:
        schedule.state = PollState.IDLE
        schedule.consecutive_failures = 0
        schedule.current_delay_seconds = 0.0
        schedule.in_cooldown = False
        schedule.backoff_until = None
        schedule.alert_fired = False
        schedule.next_poll = now + timedelta(seconds=schedule.interval_seconds)

    def on_failure(self, schedule, now: datetime, retry_after: Optional[float] = None) -> BackoffDecision:
        """
        Record a failed cycle and move the schedule into BACKOFF.

        Below ``max_retry_attempts`` the next poll is a retry after the backoff
        delay. From then on the pair is in cool-down: the regular schedule is
        suspended until ``backoff_until`` and any poll before that is skipped.
        A provider wait hint (``retry_after``) lengthens the delay, never
        shortens it.
        """
        schedule.consecutive_failures += 1
        failures = schedule.consecutive_failures
        delay = self.delay_for(failures)
        if retry_after is not None:
            delay = max(delay, retry_after)

        schedule.state = PollState.BACKOFF
        schedule.current_delay_seconds = delay

        in_cooldown = failures >= self.max_retry_attempts
        next_poll = now + timedelta(seconds=delay)
        if in_cooldown:
            cooldown_end = now + timedelta(seconds=max(delay, schedule.interval_seconds))
            schedule.backoff_until = cooldown_end
            next_poll = cooldown_end
        schedule.in_cooldown = in_cooldown
        schedule.next_poll = next_poll

        alert = False
        if failures >= self.alert_after_consecutive_failures and not schedule.alert_fired:
            schedule.alert_fired = True
            alert = True

        return BackoffDecision(delay_seconds=delay, next_poll=next_poll, in_cooldown=in_cooldown, alert=alert)

    @staticmethod
    def should_skip(schedule, now: datetime) -> bool:
        """True while a cool-down window is still open."""
        return schedule.in_cooldown and schedule.backoff_until is not None and now < schedule.backoff_until
