"""
Time source for the engine.

All persisted timestamps are ISO-8601 strings in UTC with a fixed width, so
SQL string comparison orders them correctly.
"""

import time
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


def to_iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_iso(value):
    """Parse a stored or user-supplied timestamp into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().replace(' ', 'T', 1)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_zone(tz_name):
    try:
        return ZoneInfo(tz_name or 'UTC')
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {tz_name}")


class Clock:
    """Wall clock plus monotonic clock plus store-local timezone resolution."""

    def now(self):
        raise NotImplementedError

    def monotonic(self):
        raise NotImplementedError

    def localize(self, value, tz_name):
        """
        Interpret ``value`` in the store's timezone and return it in UTC.
        Aware values keep their own offset.
        """
        if isinstance(value, str):
            text = value.strip().replace(' ', 'T', 1)
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            try:
                value = datetime.fromisoformat(text)
            except ValueError:
                raise ValidationError(f"Invalid timestamp: {value}")
        if value.tzinfo is None:
            value = value.replace(tzinfo=get_zone(tz_name))
        return value.astimezone(timezone.utc)


class SystemClock(Clock):

    def now(self):
        return datetime.now(timezone.utc)

    def monotonic(self):
        return time.monotonic()


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start=None):
        self._now = parse_iso(start) if start is not None else datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0

    def now(self):
        return self._now

    def monotonic(self):
        return self._mono

    def set(self, value):
        self._now = parse_iso(value)

    def advance(self, **kwargs):
        delta = timedelta(**kwargs)
        self._now = self._now + delta
        self._mono += delta.total_seconds()
        return self._now
