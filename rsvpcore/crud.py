"""Event lookup and ownership helpers shared by the services."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from .errors import ForbiddenError, NotFoundError
from .models import EVENT_STATUSES, Event
from .utils import to_naive_utc


def create_event(
    session: Session,
    *,
    owner_id: int,
    title: str,
    status: str = "published",
    capacity: int | None = None,
    rsvp_deadline: datetime | None = None,
) -> Event:
    """Create and persist a new event."""
    if status not in EVENT_STATUSES:
        raise ValueError(f"Invalid event status {status!r}")
    if capacity is not None and capacity < 0:
        raise ValueError("Capacity cannot be negative")
    event = Event(
        owner_id=owner_id,
        title=title,
        status=status,
        capacity=capacity,
        attending_count=0,
        rsvp_deadline=to_naive_utc(rsvp_deadline),
    )
    session.add(event)
    session.flush()
    return event


def require_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def require_owner(event: Event, acting_user_id: int | None, *, action: str) -> None:
    """Raise ``ForbiddenError`` unless the acting user owns the event."""
    if acting_user_id is None or event.owner_id != acting_user_id:
        raise ForbiddenError(f"Only event owners can {action}")


def require_owned_event(
    session: Session, event_id: str, acting_user_id: int | None, *, action: str
) -> Event:
    event = require_event(session, event_id)
    require_owner(event, acting_user_id, action=action)
    return event
