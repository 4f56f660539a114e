"""Attendee admission: RSVP creation, status changes, and removal.

Two invariants are guarded by the store rather than by read-then-write checks:

* one attendee per (event, case-folded email) -- a unique index on
  ``attendees.email_key``;
* attending attendees never exceed the event capacity -- a conditional
  UPDATE of ``events.attending_count`` (see ``capacity.claim_slot``) issued in
  the same transaction as the attendee write.

The reads done beforehand only pick a friendlier error. Every function expects
the caller to own the transaction (``database.get_session`` or the API's
``get_db``) and to roll it back when an error is raised.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import capacity
from .config import settings
from .crud import require_event, require_owned_event
from .database import unicode_lower
from .errors import (
    CapacityExceededError,
    ConflictError,
    DeadlinePassedError,
    InvalidStateError,
    NotFoundError,
)
from .models import RSVP_STATUSES, Attendee, Event
from .utils import fold_email, utcnow

logger = logging.getLogger("uvicorn.error")

ATTENDING = "attending"
UNIQUE_EMAIL_INDEX = "uq_attendees_event_email"
SORTABLE_FIELDS = {
    "registration_date": Attendee.registration_date,
    "name": Attendee.name,
    "email": Attendee.email,
    "rsvp_status": Attendee.rsvp_status,
}


def _validate_status(status: str) -> str:
    if status not in RSVP_STATUSES:
        raise ValueError(f"Invalid RSVP status {status!r}")
    return status


def _find_by_email(session: Session, event_id: str, email: str) -> Attendee | None:
    stmt = select(Attendee).where(
        Attendee.event_id == event_id,
        Attendee.email_key == fold_email(email),
    )
    return session.scalars(stmt).first()


def _is_duplicate_email(exc: IntegrityError) -> bool:
    # SQLite names the columns, other backends name the index.
    detail = str(getattr(exc, "orig", exc))
    return UNIQUE_EMAIL_INDEX in detail or "attendees.email_key" in detail


def _admit_or_raise(session: Session, event: Event) -> None:
    """Take one attending slot for ``event`` or raise ``CapacityExceededError``."""
    if not capacity.admit(event.capacity, event.attending_count):
        logger.warning(
            "Rejected admission to full event %s (%s/%s)",
            event.id,
            event.attending_count,
            event.capacity,
        )
        raise CapacityExceededError
    if not capacity.claim_slot(session, event):
        logger.warning(
            "Rejected admission to event %s: capacity %s taken by a concurrent writer",
            event.id,
            event.capacity,
        )
        raise CapacityExceededError


def create_rsvp(
    session: Session,
    *,
    event_id: str,
    name: str,
    email: str,
    rsvp_status: str,
    dietary_requirements: str | None = None,
    guest_info: dict | None = None,
    now: datetime | None = None,
) -> Attendee:
    """Create a new attendee for a published event.

    Create-only: a second RSVP for the same email (any letter case) raises
    ``ConflictError`` instead of updating the existing record.
    """
    _validate_status(rsvp_status)
    event = require_event(session, event_id)
    if event.status != "published":
        raise InvalidStateError("Event is not published and not accepting RSVPs")
    now = now or utcnow()
    if event.rsvp_deadline is not None and now > event.rsvp_deadline:
        raise DeadlinePassedError(
            f"RSVP deadline passed at {event.rsvp_deadline.isoformat()}"
        )

    normalized_email = email.strip()
    if _find_by_email(session, event.id, normalized_email):
        logger.warning("Duplicate RSVP for %s on event %s", normalized_email, event.id)
        raise ConflictError

    if rsvp_status == ATTENDING:
        _admit_or_raise(session, event)

    guest_info = guest_info or {}
    attendee = Attendee(
        event_id=event.id,
        name=name,
        email=normalized_email,
        rsvp_status=rsvp_status,
        dietary_requirements=dietary_requirements,
        phone=guest_info.get("phone"),
        company=guest_info.get("company"),
        registration_date=now,
        last_modified=now,
    )
    session.add(attendee)
    try:
        session.flush()
    except IntegrityError as exc:
        if _is_duplicate_email(exc):
            logger.warning(
                "Duplicate RSVP for %s on event %s rejected by the store",
                normalized_email,
                event.id,
            )
            raise ConflictError from exc
        raise
    logger.info(
        "RSVP %s created for event %s with status %s",
        attendee.id,
        event.id,
        rsvp_status,
    )
    return attendee


def update_attendee_status(
    session: Session,
    *,
    event_id: str,
    attendee_id: str,
    new_status: str,
    acting_user_id: int | None,
) -> Attendee:
    """Move an attendee to ``new_status`` on behalf of the event owner.

    Entering ``attending`` takes a capacity slot every time, even for an
    attendee who held one before; leaving it gives the slot back and never
    fails on capacity. Deadline and publication state are not consulted.
    """
    _validate_status(new_status)
    event = require_owned_event(
        session, event_id, acting_user_id, action="update attendee status"
    )
    attendee = session.scalars(
        select(Attendee).where(
            Attendee.id == attendee_id, Attendee.event_id == event.id
        )
    ).first()
    if not attendee:
        raise NotFoundError("Attendee not found for this event")

    previous_status = attendee.rsvp_status
    if previous_status == new_status:
        return attendee

    swapped = session.execute(
        update(Attendee)
        .where(Attendee.id == attendee.id, Attendee.rsvp_status == previous_status)
        .values(rsvp_status=new_status, last_modified=utcnow())
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        raise ConflictError("Attendee was modified concurrently; reload and try again")

    if new_status == ATTENDING:
        _admit_or_raise(session, event)
    elif previous_status == ATTENDING:
        capacity.release_slot(session, event)

    session.refresh(attendee)
    logger.info(
        "Attendee %s on event %s moved from %s to %s by user %s",
        attendee.id,
        event.id,
        previous_status,
        new_status,
        acting_user_id,
    )
    return attendee


def delete_attendee(session: Session, *, attendee_id: str) -> Attendee:
    """Remove an attendee and return the deleted record."""
    attendee = session.get(Attendee, attendee_id)
    if not attendee:
        raise NotFoundError("Attendee not found")
    observed_status = attendee.rsvp_status
    event = attendee.event

    result = session.execute(
        delete(Attendee).where(
            Attendee.id == attendee.id, Attendee.rsvp_status == observed_status
        )
    )
    if result.rowcount != 1:
        still_there = session.scalar(
            select(Attendee.id).where(Attendee.id == attendee_id)
        )
        if still_there is None:
            raise NotFoundError("Attendee not found")
        raise ConflictError("Attendee was modified concurrently; reload and try again")

    if observed_status == ATTENDING:
        capacity.release_slot(session, event)
    session.expunge(attendee)
    logger.info(
        "Attendee %s (%s) deleted from event %s",
        attendee.id,
        attendee.email,
        attendee.event_id,
    )
    return attendee


def get_attendee(session: Session, attendee_id: str) -> Attendee:
    attendee = session.get(Attendee, attendee_id)
    if not attendee:
        raise NotFoundError("Attendee not found")
    return attendee


def get_event_attendees(session: Session, event_id: str) -> Sequence[Attendee]:
    """Return an event's attendees, earliest registration first."""
    event = require_event(session, event_id)
    stmt = (
        select(Attendee)
        .where(Attendee.event_id == event.id)
        .order_by(Attendee.registration_date.asc(), Attendee.id.asc())
    )
    return session.scalars(stmt).all()


def page_size(limit: int | None) -> int:
    """Page size actually applied: the default when unset, capped at the maximum."""
    return min(
        max(limit or settings.attendees_per_page, 1), settings.max_attendees_per_page
    )


def query_attendees(
    session: Session,
    *,
    event_id: str | None = None,
    rsvp_status: str | None = None,
    email: str | None = None,
    page: int = 1,
    limit: int | None = None,
    sort_by: str = "registration_date",
    sort_type: str = "desc",
) -> Sequence[Attendee]:
    """Page through attendees with optional equality/substring filters."""
    if sort_by not in SORTABLE_FIELDS:
        raise ValueError(f"Cannot sort attendees by {sort_by!r}")
    page = max(page, 1)
    limit = page_size(limit)
    column = SORTABLE_FIELDS[sort_by]
    ordering = column.asc() if sort_type == "asc" else column.desc()

    stmt = select(Attendee).order_by(ordering, Attendee.id.asc())
    if event_id:
        stmt = stmt.where(Attendee.event_id == event_id)
    if rsvp_status:
        stmt = stmt.where(Attendee.rsvp_status == _validate_status(rsvp_status))
    if email:
        stmt = stmt.where(
            unicode_lower(Attendee.email).contains(email.lower(), autoescape=True)
        )
    stmt = stmt.offset((page - 1) * limit).limit(limit)
    return session.scalars(stmt).all()


def reconcile_attending_count(session: Session, event_id: str) -> tuple[int, int]:
    """Recompute ``attending_count`` from attendee rows.

    Returns ``(previous, actual)``. Only needed after out-of-band edits to the
    attendees table.
    """
    event = require_event(session, event_id)
    previous = event.attending_count
    actual = (
        session.scalar(
            select(func.count())
            .select_from(Attendee)
            .where(Attendee.event_id == event.id, Attendee.rsvp_status == ATTENDING)
        )
        or 0
    )
    if previous != actual:
        event.attending_count = actual
        session.add(event)
        session.flush()
        logger.warning(
            "Reconciled attending count for event %s: %d -> %d",
            event.id,
            previous,
            actual,
        )
    return previous, actual
