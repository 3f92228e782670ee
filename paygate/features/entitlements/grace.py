"""
Grace period policy for failed recurring payments.

A past_due subscription keeps full access until its current period ends, so a
transient card decline does not cut the user off. The user is flagged with a
"fix your payment" signal for the whole window.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from paygate.models.entitlement import SubscriptionGrant


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def in_grace_period(grant: Optional[SubscriptionGrant], now: Optional[datetime] = None) -> bool:
    """True iff the grant is past_due and its current period has not ended yet."""
    if grant is None or grant.status != "past_due" or grant.current_period_end is None:
        return False
    return _aware(grant.current_period_end) > _now(now)


def is_active(grant: Optional[SubscriptionGrant]) -> bool:
    return grant is not None and grant.status == "active"


def grace_remaining(grant: Optional[SubscriptionGrant], now: Optional[datetime] = None) -> Optional[timedelta]:
    """Time left in the grace window, or None when not in grace."""
    now = _now(now)
    if not in_grace_period(grant, now):
        return None
    return _aware(grant.current_period_end) - now


def format_remaining(delta: Optional[timedelta]) -> Optional[str]:
    """
    Render remaining grace time at day/hour granularity.

    >>> format_remaining(timedelta(days=3, hours=5))
    '3 days'
    >>> format_remaining(timedelta(hours=1, minutes=20))
    '1 hour'
    >>> format_remaining(timedelta(minutes=30))
    'less than 1 hour'
    """
    if delta is None:
        return None
    days = delta.days
    if days >= 1:
        return f"{days} day" if days == 1 else f"{days} days"
    hours = int(delta.total_seconds() // 3600)
    if hours < 1:
        return "less than 1 hour"
    return f"{hours} hour" if hours == 1 else f"{hours} hours"
