"""tradesync.core.time

The only time helper surface in the codebase.

Brokers disagree about timestamps: RFC3339 with offsets, `Z` suffixes, epoch
millis, naive strings. Everything is normalised to aware UTC here.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime, time


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 datetime string into an aware UTC datetime.

    Accepts:
    - `Z` suffix
    - explicit offsets
    - naive timestamps (assumed UTC)
    - nanosecond fractions (truncated to microseconds; OANDA sends these)

    Raises:
        ValueError: if parsing fails.
    """

    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"

    if "." in v:
        head, _, frac = v.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(frac):
            if not ch.isdigit():
                rest = frac[i:]
                break
            digits += ch
        v = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    dt = datetime.fromisoformat(v)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def trade_date(dt: datetime) -> date:
    """Calendar date (UTC) used for signatures and fuzzy lookups."""

    return ensure_utc(dt).date()


def parse_time_of_day(values: Iterable[str]) -> frozenset[time]:
    return frozenset(time.fromisoformat(v) for v in values)


def is_placeholder_time(dt: datetime | None, placeholders: frozenset[time]) -> bool:
    """True when ``dt`` looks synthetic: a known time-of-day used when only a date was known.

    Midnight, and the one-second offset used to keep closed_at > opened_at,
    are the defaults. Sub-second precision means a real execution time.
    """

    if dt is None:
        return True
    t = ensure_utc(dt).timetz().replace(tzinfo=None)
    if t.microsecond:
        return False
    return t in placeholders
