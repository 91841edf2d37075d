"""UTC time helpers.

SQLite hands back naive datetimes even when aware ones were stored, so every
timestamp read from the database goes through ensure_utc before arithmetic.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(earlier: datetime | None, later: datetime) -> float:
    """Hours from earlier to later; infinite when earlier is unset."""
    if earlier is None:
        return float("inf")
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 3600.0


def format_price(price: float) -> str:
    """Full decimal rendering for tiny token prices (no scientific notation)."""
    if price == 0:
        return "0"
    if price >= 0.01:
        return f"{price:.6f}"
    return f"{price:.12f}".rstrip("0").rstrip(".")
