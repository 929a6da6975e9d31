"""
Time helpers.
Business datetimes are persisted as naive UTC; display uses the company timezone.
"""
from datetime import date, datetime, time, timezone
from typing import Optional, Union
import pytz
from ..config import settings


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Union[datetime, date]) -> datetime:
    """
    Normalize an incoming date/datetime to naive UTC.

    Plain dates become midnight UTC; aware datetimes are converted to UTC and
    stripped of tzinfo; naive datetimes are assumed to already be UTC.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def utc_to_local(utc_datetime: Optional[datetime], timezone_str: Optional[str] = None) -> Optional[datetime]:
    """
    Convert naive/aware UTC datetime to the local timezone.

    Args:
        utc_datetime: UTC datetime
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Local datetime (timezone-aware), or None
    """
    if utc_datetime is None:
        return None
    tz = pytz.timezone(timezone_str or settings.tz_default)
    if utc_datetime.tzinfo is None:
        utc_dt = utc_datetime.replace(tzinfo=pytz.UTC)
    else:
        utc_dt = utc_datetime.astimezone(pytz.UTC)
    return utc_dt.astimezone(tz)
