"""Shared timestamp helpers."""
from __future__ import annotations

from datetime import datetime, timezone


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    """Timestamp attached to computed views and API responses."""
    return _format_datetime_utc(datetime.now(timezone.utc))


def local_now_iso() -> str:
    """Local wall-clock time with its UTC offset, as written into task records."""
    return datetime.now().astimezone().replace(microsecond=0).isoformat()


def epoch_ms(seconds: float) -> int:
    """Convert a clock reading in seconds to integer epoch milliseconds."""
    return int(round(float(seconds) * 1000))
