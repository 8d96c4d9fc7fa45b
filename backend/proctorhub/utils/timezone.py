"""
Time helpers. Timestamps are stored as naive UTC; display conversion uses
the configured default timezone.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import pytz

from ..core.config import settings


def get_utc_now() -> datetime:
    """Current time as naive UTC, the storage convention for every timestamp column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_cutoff(seconds: int, now: Optional[datetime] = None) -> datetime:
    return (now or get_utc_now()) - timedelta(seconds=seconds)


def format_display_time(dt: datetime, format_str: Optional[str] = None) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=pytz.UTC)
    local = dt.astimezone(pytz.timezone(settings.default_timezone))
    return local.strftime(format_str or settings.timezone_display_format)
