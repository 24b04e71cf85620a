# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Timezone utilities: Graph datetime parsing, target-zone conversion and day splitting
"""
from datetime import datetime, timedelta, time as dtime
from typing import List, Optional, Tuple

import pytz

import config

# Windows zone names Graph returns when no Prefer: outlook.timezone header applies
WINDOWS_TO_IANA = {
    'UTC': 'UTC',
    'Coordinated Universal Time': 'UTC',
    'Eastern Standard Time': 'America/New_York',
    'Central Standard Time': 'America/Chicago',
    'Mountain Standard Time': 'America/Denver',
    'US Mountain Standard Time': 'America/Phoenix',
    'Pacific Standard Time': 'America/Los_Angeles',
    'Alaskan Standard Time': 'America/Anchorage',
    'Hawaiian Standard Time': 'Pacific/Honolulu',
    'GMT Standard Time': 'Europe/London',
}


def get_target_timezone(tz_name: Optional[str] = None):
    """pytz zone used for day splitting and payload timestamps"""
    return pytz.timezone(tz_name or config.TARGET_TIMEZONE)


def get_local_time(tz_name: Optional[str] = None) -> datetime:
    """Current time in the target timezone"""
    return datetime.now(get_target_timezone(tz_name))


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def to_target_zone(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert an aware (or naive-UTC) datetime to the target timezone"""
    if dt.tzinfo is None:
        dt = pytz.UTC.localize(dt)
    return dt.astimezone(get_target_timezone(tz_name))


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a Z suffix, millisecond precision"""
    if dt is None:
        return None
    utc_dt = to_utc(dt)
    return utc_dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{utc_dt.microsecond // 1000:03d}Z"


def _resolve_zone(tz_label: str):
    label = (tz_label or 'UTC').strip()
    if label in WINDOWS_TO_IANA:
        return pytz.timezone(WINDOWS_TO_IANA[label])
    try:
        return pytz.timezone(label)
    except pytz.UnknownTimeZoneError:
        return None


def _parse_iso(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    # Graph emits 7 fractional digits; fromisoformat accepts at most 6
    if '.' in text:
        head, _, rest = text.partition('.')
        digits = ''
        tail = ''
        for i, ch in enumerate(rest):
            if ch.isdigit():
                digits += ch
            else:
                tail = rest[i:]
                break
        text = f"{head}.{digits[:6].ljust(6, '0')}{tail}" if digits else f"{head}{tail}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_graph_datetime(field) -> Optional[datetime]:
    """Convert Microsoft Graph {"dateTime": str, "timeZone": str} into an aware UTC datetime.

    Args:
        field: dict with keys 'dateTime' and 'timeZone'
    Returns:
        datetime in UTC or None if missing or unparsable.
    """
    if not isinstance(field, dict) or not field.get('dateTime'):
        return None

    parsed = _parse_iso(str(field.get('dateTime')))
    if parsed is None:
        return None

    if parsed.tzinfo is not None:
        return parsed.astimezone(pytz.UTC)

    tz = _resolve_zone(field.get('timeZone') or 'UTC')
    if tz is None:
        return None
    return tz.localize(parsed).astimezone(pytz.UTC)


def parse_iso_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (naive values are taken as UTC)"""
    if not value or not isinstance(value, str):
        return None
    parsed = _parse_iso(value)
    if parsed is None:
        return None
    return to_utc(parsed)


def _local_midnight(tz, day) -> datetime:
    naive = datetime.combine(day, dtime(0, 0))
    try:
        return tz.localize(naive, is_dst=None)
    except (pytz.AmbiguousTimeError, pytz.NonExistentTimeError):
        return tz.normalize(tz.localize(naive, is_dst=False))


def split_into_day_blocks(start: datetime, end: datetime,
                          tz_name: Optional[str] = None) -> List[Tuple[datetime, datetime]]:
    """
    Split [start, end) into blocks that each sit inside one local calendar day

    Blocks are returned in order as target-zone aware datetimes. A block that
    runs to the end of a day ends at the next local midnight, so consecutive
    blocks share their boundary and the union equals the input interval.
    Same-day and zero-length intervals produce exactly one block.
    """
    tz = get_target_timezone(tz_name)
    local_start = to_target_zone(start, tz_name)
    local_end = to_target_zone(end, tz_name)

    if local_start.date() == local_end.date() or local_end <= local_start:
        return [(local_start, local_end)]

    blocks = []
    cursor = local_start
    while cursor < local_end:
        next_midnight = _local_midnight(tz, cursor.date() + timedelta(days=1))
        block_end = local_end if local_end < next_midnight else next_midnight
        blocks.append((cursor, block_end))
        cursor = next_midnight
    return blocks


def format_duration(delta: timedelta) -> str:
    """Format a duration as HH:MM:SS (hours may exceed 23)"""
    total_seconds = int(round(delta.total_seconds()))
    if total_seconds < 0:
        total_seconds = 0
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def window_bounds(past_days: int, future_days: int,
                  now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """UTC (start, end) of a rolling window around now"""
    current = to_utc(now) if now else utc_now()
    return current - timedelta(days=past_days), current + timedelta(days=future_days)


def default_cleanup_window(now: Optional[datetime] = None, future_days: int = 90,
                           tz_name: Optional[str] = None) -> Tuple[datetime, datetime]:
    """Start of the current local week (Monday) through the end of day `future_days` ahead"""
    tz = get_target_timezone(tz_name)
    local_now = to_target_zone(now, tz_name) if now else get_local_time(tz_name)
    week_start = _local_midnight(tz, (local_now - timedelta(days=local_now.weekday())).date())
    end_day = (local_now + timedelta(days=future_days)).date()
    window_end = _local_midnight(tz, end_day + timedelta(days=1)) - timedelta(milliseconds=1)
    return week_start.astimezone(pytz.UTC), window_end.astimezone(pytz.UTC)


def format_local_time(dt: Optional[datetime], tz_name: Optional[str] = None) -> str:
    """Format datetime in the target timezone for display"""
    if dt is None:
        return "Never"
    return to_target_zone(dt, tz_name).strftime('%b %d, %Y at %I:%M %p %Z')
