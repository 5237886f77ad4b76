"""UTC day and candle-interval helpers."""

from datetime import datetime, timedelta, timezone

_INTERVAL_UNITS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(tz=timezone.utc)


def utc_day(moment: datetime) -> str:
    """YYYY-MM-DD of a timezone-aware moment, in UTC."""
    return moment.astimezone(timezone.utc).date().isoformat()


def utc_day_start(moment: datetime) -> datetime:
    """Midnight UTC of the moment's day."""
    moment = moment.astimezone(timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def interval_to_timedelta(interval: str) -> timedelta:
    """
    Parse an exchange interval string.

    >>> interval_to_timedelta("15m")
    datetime.timedelta(seconds=900)
    """
    count, unit = interval[:-1], interval[-1:]
    if not count.isdigit() or unit not in _INTERVAL_UNITS:
        raise ValueError(f"Unsupported interval: {interval!r}")
    return int(count) * _INTERVAL_UNITS[unit]
