# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Timezone utilities for epoch handling, Google date parsing and display formatting
"""
import time
from datetime import datetime, date
import pytz
from typing import Optional, Tuple

import config


def get_display_timezone():
    """Get the configured display timezone"""
    try:
        return pytz.timezone(config.DISPLAY_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def now_epoch_ms() -> int:
    """Current time as integer epoch milliseconds"""
    return int(time.time() * 1000)


def get_display_time() -> datetime:
    """Get current time in the display timezone"""
    return datetime.now(get_display_timezone())


def epoch_ms_to_datetime(epoch_ms: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime"""
    if epoch_ms is None:
        return None
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=pytz.UTC)


def to_rfc3339(dt: datetime) -> str:
    """Format an aware datetime the way the Calendar API expects (UTC, Z suffix)"""
    if dt.tzinfo is None:
        dt = pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_google_datetime(field: Optional[dict]) -> Tuple[Optional[datetime], bool]:
    """Convert a Google {"dateTime": str} or {"date": str} field into an aware datetime.

    Args:
        field: the event's start or end object
    Returns:
        (datetime, is_all_day). datetime is None if both keys are missing.
    Raises:
        ValueError: if a present value cannot be parsed.
    """
    if not field:
        return None, False

    dt_str = field.get('dateTime')
    if dt_str:
        parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
        if parsed.tzinfo is None:
            # Floating time, Google supplies the zone separately
            tz_label = field.get('timeZone') or 'UTC'
            try:
                tz = pytz.timezone(tz_label)
            except pytz.UnknownTimeZoneError:
                tz = pytz.UTC
            parsed = tz.localize(parsed)
        return parsed, False

    date_str = field.get('date')
    if date_str:
        day = date.fromisoformat(date_str)
        midnight = datetime(day.year, day.month, day.day)
        return get_display_timezone().localize(midnight), True

    return None, False


def format_clock_time(dt: datetime) -> str:
    """Format as e.g. '9:30 AM' in the display timezone"""
    local = dt.astimezone(get_display_timezone())
    return local.strftime('%I:%M %p').lstrip('0')


def format_time_range(start: Optional[datetime], end: Optional[datetime], is_all_day: bool) -> str:
    """Build the displayTime string for an event.

    The end time is only included when start and end fall on the same
    calendar day in the display timezone.
    """
    if is_all_day:
        return "All day"
    if start is None:
        return ""

    start_text = format_clock_time(start)
    if end is None:
        return start_text

    tz = get_display_timezone()
    if start.astimezone(tz).date() != end.astimezone(tz).date():
        return start_text

    return f"{start_text} - {format_clock_time(end)}"


def format_display_time(dt: Optional[datetime], include_timezone: bool = True) -> str:
    """Format datetime in the display timezone for status output"""
    if dt is None:
        return "Never"

    local = dt.astimezone(get_display_timezone()) if dt.tzinfo else get_display_timezone().localize(dt)
    if include_timezone:
        return local.strftime('%b %d, %Y at %I:%M %p %Z')
    return local.strftime('%b %d, %Y at %I:%M %p')
