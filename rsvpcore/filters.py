"""Recipient filters: declarative audience selection over an event's attendees.

A filter has three optional parts that are ANDed together; an absent part adds
no constraint. Each part is turned into SQL by its own predicate builder, and
both the size-only count and the full recipient list are built from the same
criteria, so a message's snapshot count and its delivery list cannot disagree
about the rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .crud import require_event
from .database import unicode_lower
from .models import RSVP_STATUSES, Attendee
from .utils import isoformat_or_none, parse_iso_datetime


@dataclass(frozen=True)
class DateRange:
    start: datetime | None = None
    end: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class RecipientFilter:
    rsvp_status: frozenset[str] = field(default_factory=frozenset)
    registration_date_range: DateRange | None = None
    search_query: str | None = None

    def __post_init__(self) -> None:
        unknown = set(self.rsvp_status) - set(RSVP_STATUSES)
        if unknown:
            raise ValueError(f"Unknown RSVP statuses in filter: {sorted(unknown)}")

    @classmethod
    def from_wire(cls, payload: dict[str, Any] | None) -> "RecipientFilter":
        """Build a filter from the camelCase JSON shape used by the API."""
        payload = payload or {}
        date_range = payload.get("registrationDateRange") or None
        search = (payload.get("searchQuery") or "").strip()
        return cls(
            rsvp_status=frozenset(payload.get("rsvpStatus") or ()),
            registration_date_range=(
                DateRange(
                    start=parse_iso_datetime(date_range.get("start")),
                    end=parse_iso_datetime(date_range.get("end")),
                )
                if date_range
                else None
            ),
            search_query=search or None,
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.rsvp_status:
            payload["rsvpStatus"] = sorted(self.rsvp_status)
        if self.registration_date_range and not self.registration_date_range.is_open:
            bounds = {}
            if self.registration_date_range.start:
                bounds["start"] = isoformat_or_none(self.registration_date_range.start)
            if self.registration_date_range.end:
                bounds["end"] = isoformat_or_none(self.registration_date_range.end)
            payload["registrationDateRange"] = bounds
        if self.search_query:
            payload["searchQuery"] = self.search_query
        return payload


PredicateBuilder = Callable[[RecipientFilter], "ColumnElement[bool] | None"]


def status_predicate(recipient_filter: RecipientFilter) -> ColumnElement[bool] | None:
    if not recipient_filter.rsvp_status:
        return None
    return Attendee.rsvp_status.in_(sorted(recipient_filter.rsvp_status))


def date_range_predicate(
    recipient_filter: RecipientFilter,
) -> ColumnElement[bool] | None:
    """Inclusive bounds on registration date; each bound is optional."""
    date_range = recipient_filter.registration_date_range
    if date_range is None or date_range.is_open:
        return None
    clauses = []
    if date_range.start is not None:
        clauses.append(Attendee.registration_date >= date_range.start)
    if date_range.end is not None:
        clauses.append(Attendee.registration_date <= date_range.end)
    return clauses[0] if len(clauses) == 1 else clauses[0] & clauses[1]


def search_predicate(recipient_filter: RecipientFilter) -> ColumnElement[bool] | None:
    """Case-insensitive substring match on name OR email OR company."""
    if not recipient_filter.search_query:
        return None
    needle = recipient_filter.search_query.lower()
    return or_(
        *(
            unicode_lower(column).contains(needle, autoescape=True)
            for column in (Attendee.name, Attendee.email, Attendee.company)
        )
    )


PREDICATE_BUILDERS: tuple[PredicateBuilder, ...] = (
    status_predicate,
    date_range_predicate,
    search_predicate,
)


def build_criteria(
    event_id: str, recipient_filter: RecipientFilter
) -> list[ColumnElement[bool]]:
    criteria: list[ColumnElement[bool]] = [Attendee.event_id == event_id]
    for builder in PREDICATE_BUILDERS:
        clause = builder(recipient_filter)
        if clause is not None:
            criteria.append(clause)
    return criteria


def count_recipients(
    session: Session, event_id: str, recipient_filter: RecipientFilter
) -> int:
    stmt = (
        select(func.count())
        .select_from(Attendee)
        .where(*build_criteria(event_id, recipient_filter))
    )
    return session.scalar(stmt) or 0


def select_recipients(
    session: Session, event_id: str, recipient_filter: RecipientFilter
) -> Sequence[Attendee]:
    stmt = (
        select(Attendee)
        .where(*build_criteria(event_id, recipient_filter))
        .order_by(Attendee.registration_date.asc(), Attendee.id.asc())
    )
    return session.scalars(stmt).all()


def evaluate_recipient_count(
    session: Session, event_id: str, recipient_filter: RecipientFilter
) -> int:
    """Count matching attendees for an existing event (``NotFoundError`` otherwise)."""
    event = require_event(session, event_id)
    return count_recipients(session, event.id, recipient_filter)
