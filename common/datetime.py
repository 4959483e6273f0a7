"""Datetime helpers common to the treasury services.

Provides:
    parse_iso8601(s): robust ISO-8601 parser that always returns an *aware* UTC
    datetime instance (trailing "Z", explicit offsets and fractional seconds
    are all accepted).
    utcnow(): naive UTC "now", the convention for every persisted timestamp.
    from_epoch(ts): naive UTC datetime from a unix timestamp as returned by
    block explorers; ``None`` passes through.

Keeping these in one place avoids scattered direct calls to
dateutil.parser.isoparse or datetime.fromisoformat.
"""
from __future__ import annotations

import datetime as _dt
from typing import Optional, Union

from dateutil.parser import isoparse as _isoparse

__all__ = ["parse_iso8601", "utcnow", "from_epoch", "to_naive_utc"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings or datetime objects. If *value* is already a
    datetime, it will be normalised to UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except Exception as exc:  # pragma: no cover – caller will decide
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def to_naive_utc(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Normalise *value* to the naive-UTC form stored in the database."""
    return parse_iso8601(value).replace(tzinfo=None)


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def from_epoch(ts: Optional[Union[int, float]]) -> Optional[_dt.datetime]:
    if ts is None:
        return None
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc).replace(tzinfo=None)
