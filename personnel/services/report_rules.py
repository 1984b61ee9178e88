"""
Daily report rules: edit lock, same-day cutoff and period-category dates.
All "today" comparisons use the local calendar day in settings.tz_default.
"""
from datetime import date, datetime
from typing import Optional, Tuple

import pytz

from ..config import settings
from ..errors import Forbidden, ValidationFailed
from ..models.models import Category, DailyReport, User
from .permissions import same_unit


LOCKED_STATUSES = {"PENDING", "APPROVED"}


def local_now(timezone_str: Optional[str] = None) -> datetime:
    """Current time in the configured local timezone (timezone-aware)."""
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return datetime.now(tz)


def to_local(now: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Express ``now`` in local time. Naive datetimes are taken as already local.
    """
    if now.tzinfo is None:
        return now
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return now.astimezone(tz)


def is_after_cutoff(now: datetime, cutoff_hour: Optional[int] = None) -> bool:
    """True at or after the cutoff hour (16:00 by default), local time."""
    hour = settings.report_cutoff_hour if cutoff_hour is None else cutoff_hour
    local = to_local(now)
    return (local.hour, local.minute) >= (hour, 0)


def assert_editable(report: DailyReport, user: User, now: datetime) -> None:
    """
    Raise unless rows of ``report`` may be written now.

    Checks run in order: unit membership (FORBIDDEN_UNIT), status lock
    (REPORT_LOCKED), same-day cutoff (AFTER_CUTOFF). Reports dated on any
    other day are exempt from the cutoff, so yesterday's DRAFT can still be
    corrected at any hour.
    """
    if not same_unit(user, report.unit_id):
        raise Forbidden("FORBIDDEN_UNIT", "Report belongs to another unit")
    if report.status in LOCKED_STATUSES:
        raise Forbidden("REPORT_LOCKED", "Report is locked")
    assert_before_cutoff(report, now)


def assert_before_cutoff(report: DailyReport, now: datetime) -> None:
    local = to_local(now)
    if report.report_date == local.date() and is_after_cutoff(local):
        raise Forbidden("AFTER_CUTOFF", "Today's report is closed after the cutoff")


def is_period_category(category: Optional[Category]) -> bool:
    if category is None:
        return False
    return category.code in settings.period_category_codes


def resolve_row_dates(
    *,
    period: bool,
    from_date: Optional[date],
    to_date: Optional[date],
    emergency: bool,
    today: date,
) -> Tuple[Optional[date], Optional[date]]:
    """
    Final (from, to) for a justification row.

    Emergency rows always span today only. A period category may not start or
    end today unless the row is an emergency.
    """
    if emergency:
        return today, today
    if period and (from_date == today or to_date == today):
        raise ValidationFailed("PERIOD_INVALID_TODAY", "This category cannot start today without emergency")
    return from_date, to_date


def parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationFailed("VALIDATION_ERROR", f"Invalid date: {value}")
