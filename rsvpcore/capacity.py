"""Capacity ledger: decides whether one more attendee may be admitted.

``admit`` is pure and safe to call anywhere, but a count read outside the
writing transaction can be stale by the time the row is written. Admission
therefore goes through ``claim_slot``, which applies the same rule as a
conditional UPDATE on the event row so the store arbitrates concurrent writers.
"""

from __future__ import annotations

from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .models import Event


def admit(capacity: int | None, current_attending_count: int) -> bool:
    if capacity is None:
        return True
    return current_attending_count < capacity


def remaining_slots(capacity: int | None, current_attending_count: int) -> int | None:
    """Return open attending slots, or ``None`` for unlimited events."""
    if capacity is None:
        return None
    return max(capacity - current_attending_count, 0)


def admission_clause() -> ColumnElement[bool]:
    """SQL form of ``admit`` evaluated against the stored event row."""
    return or_(Event.capacity.is_(None), Event.attending_count < Event.capacity)


def claim_slot(session: Session, event: Event) -> bool:
    """Atomically take one attending slot; ``False`` when the event is full."""
    result = session.execute(
        update(Event)
        .where(Event.id == event.id, admission_clause())
        .values(attending_count=Event.attending_count + 1)
        .execution_options(synchronize_session=False)
    )
    session.expire(event, ["attending_count"])
    return result.rowcount == 1


def release_slot(session: Session, event: Event) -> None:
    """Give back one attending slot."""
    session.execute(
        update(Event)
        .where(Event.id == event.id, Event.attending_count > 0)
        .values(attending_count=Event.attending_count - 1)
        .execution_options(synchronize_session=False)
    )
    session.expire(event, ["attending_count"])
