"""
CLOCK - INJECTABLE TIME SOURCE

Stores, queues and the sync coordinator never read the wall clock directly;
they receive a Clock. Timestamps are naive UTC datetimes, which is what
MongoDB hands back on read.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from .errors import ValidationError


class Clock:
    """Wall clock returning naive UTC datetimes"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """
    Controlled clock for tests and replays.

    now() returns the same value until advance() or set_time() is called.
    """

    def __init__(self, fixed_time: Optional[datetime] = None):
        self._time = fixed_time or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = time

    def advance(self, seconds: float = 1) -> datetime:
        self._time = self._time + timedelta(seconds=seconds)
        return self._time


def parse_timestamp(value: Union[datetime, str, None]) -> Optional[datetime]:
    """
    Normalize a stored or remote timestamp to a naive UTC datetime.

    Accepts datetimes (aware or naive) and ISO-8601 strings, including the
    trailing 'Z' form most REST backends emit.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def record_timestamp(record: dict) -> Optional[datetime]:
    """Last-modified time of a record (updated_at, falling back to created_at)"""
    return parse_timestamp(record.get("updated_at") or record.get("created_at"))


def parse_date_bound(value: Union[datetime, str, None], end_of_day: bool = False) -> Optional[datetime]:
    """
    Bound of a date-range filter. A bare 'YYYY-MM-DD' used as an upper
    bound (end_of_day=True) covers that whole day.
    """
    if value is None or value == "":
        return None
    try:
        parsed = parse_timestamp(value)
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")
    if end_of_day and isinstance(value, str) and len(value.strip()) == 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return parsed
