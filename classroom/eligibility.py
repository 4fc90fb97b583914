"""Time-gated join/start rules for scheduled classes.

``evaluate`` is pure: the same ``(session, now)`` always produces the same
result. ``now`` defaults to the local clock; there is no reconciliation with
server time, so a skewed client clock shifts the window accordingly.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from shared.errors import TimingViolation
from shared.models import EligibilityResult, Session, SessionStatus

DEFAULT_START_LEAD_MINUTES = 15
DEFAULT_JOIN_LEAD_MINUTES = 10

BUCKET_LIVE = "live"
BUCKET_READY_TO_START = "ready_to_start"
BUCKET_STARTING_SOON = "starting_soon"
BUCKET_UPCOMING = "upcoming"
BUCKET_ENDED = "ended"
BUCKET_COMPLETED = "completed"
BUCKET_CANCELLED = "cancelled"

PAST_BUCKETS = frozenset({BUCKET_ENDED, BUCKET_COMPLETED, BUCKET_CANCELLED})


@dataclass(frozen=True, slots=True)
class EligibilityPolicy:
    """How far ahead of ``scheduled_at`` a class may be started or joined."""

    start_lead: timedelta = timedelta(minutes=DEFAULT_START_LEAD_MINUTES)
    join_lead: timedelta = timedelta(minutes=DEFAULT_JOIN_LEAD_MINUTES)


DEFAULT_POLICY = EligibilityPolicy()


def evaluate(
    session: Session,
    now: Optional[datetime] = None,
    policy: EligibilityPolicy = DEFAULT_POLICY,
) -> EligibilityResult:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.astimezone()

    if session.status is SessionStatus.ONGOING:
        return EligibilityResult(bucket=BUCKET_LIVE, can_join=True, can_start=True, time_label="Live now")
    if session.status is SessionStatus.COMPLETED:
        return EligibilityResult(bucket=BUCKET_COMPLETED, can_join=False, can_start=False, time_label="Completed")
    if session.status is SessionStatus.CANCELLED:
        return EligibilityResult(bucket=BUCKET_CANCELLED, can_join=False, can_start=False, time_label="Cancelled")

    until_start = session.scheduled_at - now
    ended = now > session.ends_at
    can_start = until_start <= policy.start_lead
    can_join = until_start <= policy.join_lead and not ended

    if ended:
        bucket = BUCKET_ENDED
    elif until_start <= timedelta(0):
        bucket = BUCKET_READY_TO_START
    elif can_start:
        bucket = BUCKET_STARTING_SOON
    else:
        bucket = BUCKET_UPCOMING

    return EligibilityResult(
        bucket=bucket,
        can_join=can_join,
        can_start=can_start,
        time_label=time_until_label(until_start),
    )


def time_until_label(until_start: timedelta) -> str:
    if until_start < timedelta(0):
        return "Started"
    total_minutes = int(until_start.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 24:
        days = hours // 24
        return f"In {days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"In {hours}h {minutes}m"
    return f"In {minutes} minutes"


def ensure_can_start(session: Session, result: EligibilityResult) -> None:
    if session.status.is_terminal or not result.can_start:
        raise TimingViolation(f"Session '{session.title or session.id}' cannot be started yet ({result.time_label})")


def ensure_can_join(session: Session, result: EligibilityResult) -> None:
    if not result.can_join:
        raise TimingViolation(f"Session '{session.title or session.id}' is not open for joining ({result.time_label})")
