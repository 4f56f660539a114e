"""Utility helpers for rsvpcore."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_iso_datetime(raw: str | datetime | None) -> datetime | None:
    """Parse an ISO8601 string (``Z`` suffix allowed) into naive UTC."""
    if raw is None or isinstance(raw, datetime):
        return to_naive_utc(raw)
    text = raw.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def fold_email(email: str) -> str:
    """Comparison key for an email address: trimmed and Unicode case-folded."""
    return email.strip().casefold()
