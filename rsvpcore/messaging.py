"""Message lifecycle: creation, scheduling, dispatch transitions, delivery reports.

States are ``scheduled`` -> ``sent`` | ``failed``; creation without a
scheduled date goes straight to ``sent`` (handed to the external sender). The
recipient count is a snapshot taken once at creation and never recomputed, so
it can drift from the live audience by the time a scheduled message goes out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .crud import require_owned_event, require_owner
from .errors import (
    InvalidScheduleError,
    InvalidStateError,
    MissingScheduleError,
    NotFoundError,
)
from .filters import RecipientFilter, count_recipients
from .models import RECIPIENT_OUTCOMES, Attendee, Message, MessageDelivery
from .utils import fold_email, isoformat_or_none, to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

TERMINAL_STATUSES = frozenset({"sent", "failed"})


@dataclass(frozen=True)
class DeliveryOutcome:
    """One recipient's result as reported by the sender."""

    recipient_email: str
    status: str
    detail: str | None = None

    def __post_init__(self) -> None:
        if self.status not in RECIPIENT_OUTCOMES:
            raise ValueError(f"Invalid delivery outcome {self.status!r}")


def create_message(
    session: Session,
    *,
    event_id: str,
    acting_user_id: int | None,
    subject: str,
    content: str,
    recipient_filter: RecipientFilter,
    scheduled_date: datetime | None = None,
    now: datetime | None = None,
) -> Message:
    """Persist a message for the event owner, snapshotting its audience size."""
    event = require_owned_event(
        session, event_id, acting_user_id, action="send messages to their events"
    )
    now = now or utcnow()
    scheduled_date = to_naive_utc(scheduled_date)
    if scheduled_date is not None and scheduled_date <= now:
        raise InvalidScheduleError(
            f"Scheduled date {scheduled_date.isoformat()} must be in the future"
        )

    recipient_count = count_recipients(session, event.id, recipient_filter)
    message = Message(
        event_id=event.id,
        subject=subject,
        content=content,
        recipient_filter=recipient_filter.to_wire(),
        recipient_count=recipient_count,
        delivery_status="scheduled" if scheduled_date else "sent",
        scheduled_date=scheduled_date,
        sent_date=None if scheduled_date else now,
        created_by=acting_user_id,
        created_at=now,
    )
    session.add(message)
    session.flush()
    logger.info(
        "Message %s for event %s %s with %d recipients",
        message.id,
        event.id,
        f"scheduled for {scheduled_date.isoformat()}" if scheduled_date else "sent",
        recipient_count,
    )
    return message


def schedule_message(
    session: Session,
    *,
    event_id: str,
    acting_user_id: int | None,
    subject: str,
    content: str,
    recipient_filter: RecipientFilter,
    scheduled_date: datetime | None,
    now: datetime | None = None,
) -> Message:
    """Like ``create_message`` but refuses to fall back to an immediate send."""
    if scheduled_date is None:
        raise MissingScheduleError
    return create_message(
        session,
        event_id=event_id,
        acting_user_id=acting_user_id,
        subject=subject,
        content=content,
        recipient_filter=recipient_filter,
        scheduled_date=scheduled_date,
        now=now,
    )


def list_event_messages(
    session: Session, event_id: str, acting_user_id: int | None
) -> Sequence[Message]:
    event = require_owned_event(
        session, event_id, acting_user_id, action="view messages for their events"
    )
    stmt = (
        select(Message)
        .where(Message.event_id == event.id)
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    return session.scalars(stmt).all()


def _require_message(session: Session, message_id: str) -> Message:
    message = session.get(Message, message_id)
    if not message:
        raise NotFoundError("Message not found")
    return message


def get_message(
    session: Session, message_id: str, acting_user_id: int | None
) -> Message:
    message = _require_message(session, message_id)
    require_owner(
        message.event, acting_user_id, action="view messages for their events"
    )
    return message


def due_messages(
    session: Session, *, now: datetime | None = None, limit: int | None = None
) -> Sequence[Message]:
    """Scheduled messages whose time has come, oldest schedule first."""
    now = now or utcnow()
    stmt = (
        select(Message)
        .where(Message.delivery_status == "scheduled", Message.scheduled_date <= now)
        .order_by(Message.scheduled_date.asc(), Message.id.asc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def complete_dispatch(
    session: Session,
    *,
    message_id: str,
    outcome: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Message:
    """Dispatch hook: move a scheduled message to ``sent`` or ``failed``.

    Safe to call repeatedly. Only the first call against a scheduled message
    changes anything; later calls (retrying pollers, immediate messages that
    were never scheduled) return the stored message untouched.
    """
    if outcome not in TERMINAL_STATUSES:
        raise ValueError(
            f"Dispatch outcome must be one of {sorted(TERMINAL_STATUSES)}"
        )
    message = _require_message(session, message_id)
    now = now or utcnow()
    result = session.execute(
        update(Message)
        .where(Message.id == message.id, Message.delivery_status == "scheduled")
        .values(
            delivery_status=outcome,
            sent_date=now,
            failure_reason=reason if outcome == "failed" else None,
        )
        .execution_options(synchronize_session=False)
    )
    session.refresh(message)
    if result.rowcount == 1:
        logger.info("Message %s dispatched with outcome %s", message.id, outcome)
    else:
        logger.warning(
            "Ignoring %s dispatch for message %s already in %s state",
            outcome,
            message.id,
            message.delivery_status,
        )
    return message


def record_delivery_outcomes(
    session: Session,
    *,
    message_id: str,
    outcomes: Iterable[DeliveryOutcome],
    now: datetime | None = None,
) -> Message:
    """Accumulate per-recipient results; a newer report for a recipient wins."""
    message = _require_message(session, message_id)
    if message.delivery_status not in TERMINAL_STATUSES:
        raise InvalidStateError("Message has not been dispatched yet")
    now = now or utcnow()

    existing = {
        delivery.recipient_email: delivery
        for delivery in session.scalars(
            select(MessageDelivery).where(MessageDelivery.message_id == message.id)
        )
    }
    attendee_ids = dict(
        session.execute(
            select(Attendee.email_key, Attendee.id).where(
                Attendee.event_id == message.event_id
            )
        ).all()
    )

    for outcome in outcomes:
        email = fold_email(outcome.recipient_email)
        delivery = existing.get(email)
        if delivery is None:
            if email not in attendee_ids:
                logger.warning(
                    "Delivery outcome for %s is not an attendee of event %s",
                    email,
                    message.event_id,
                )
            delivery = MessageDelivery(
                message_id=message.id,
                attendee_id=attendee_ids.get(email),
                recipient_email=email,
            )
            existing[email] = delivery
        delivery.status = outcome.status
        delivery.detail = outcome.detail
        delivery.reported_at = now
        session.add(delivery)
    session.flush()
    return message


def get_delivery_status(
    session: Session, message_id: str, acting_user_id: int | None
) -> dict[str, Any]:
    """Delivery accounting for one message, from the outcomes reported so far.

    ``total_recipients`` is the creation-time snapshot. ``sent`` counts the
    recipients the sender has acknowledged; ``pending`` is whatever part of
    the snapshot has neither been delivered nor failed yet.
    """
    message = get_message(session, message_id, acting_user_id)
    deliveries = session.scalars(
        select(MessageDelivery)
        .where(MessageDelivery.message_id == message.id)
        .order_by(MessageDelivery.recipient_email.asc())
    ).all()
    delivered = sum(1 for d in deliveries if d.status == "delivered")
    failed = sum(1 for d in deliveries if d.status == "failed")
    total = message.recipient_count
    return {
        "message_id": message.id,
        "delivery_status": message.delivery_status,
        "total_recipients": total,
        "sent": len(deliveries),
        "delivered": delivered,
        "failed": failed,
        "pending": max(total - delivered - failed, 0),
        "details": [
            {
                "recipient_email": d.recipient_email,
                "status": d.status,
                "detail": d.detail,
                "timestamp": isoformat_or_none(d.reported_at),
            }
            for d in deliveries
        ],
    }
