"""Hand messages to the external sender and feed its results back.

Actual email transport lives outside rsvpcore behind ``MessageSender``. The
functions here resolve recipients, call the sender outside any database
transaction, then apply the dispatch hook and record per-recipient outcomes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .database import get_session
from .filters import RecipientFilter, select_recipients
from .messaging import (
    DeliveryOutcome,
    complete_dispatch,
    due_messages,
    record_delivery_outcomes,
)
from .models import Message, MessageDelivery
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class Envelope:
    message_id: str
    recipient_email: str
    recipient_name: str
    subject: str
    content: str


class MessageSender(ABC):
    """Transport boundary; implementations report one outcome per envelope."""

    @abstractmethod
    def send(self, envelopes: Sequence[Envelope]) -> list[DeliveryOutcome]:
        pass


class LoggingSender(MessageSender):
    """Logs each envelope and reports it delivered. Used when no transport is set."""

    def send(self, envelopes: Sequence[Envelope]) -> list[DeliveryOutcome]:
        outcomes = []
        for envelope in envelopes:
            logger.info(
                "Delivering message %s to %s: %s",
                envelope.message_id,
                envelope.recipient_email,
                envelope.subject,
            )
            outcomes.append(DeliveryOutcome(envelope.recipient_email, "delivered"))
        return outcomes


_sender: MessageSender | None = None


def get_sender() -> MessageSender:
    global _sender
    if _sender is None:
        _sender = LoggingSender()
    return _sender


def set_sender(sender: MessageSender | None) -> None:
    global _sender
    _sender = sender


def build_envelopes(session: Session, message: Message) -> list[Envelope]:
    """Resolve the message's stored filter against the current attendee list."""
    recipient_filter = RecipientFilter.from_wire(message.recipient_filter)
    return [
        Envelope(
            message_id=message.id,
            recipient_email=attendee.email,
            recipient_name=attendee.name,
            subject=message.subject,
            content=message.content,
        )
        for attendee in select_recipients(session, message.event_id, recipient_filter)
    ]


def _send(
    sender: MessageSender, envelopes: Sequence[Envelope]
) -> tuple[list[DeliveryOutcome], str | None]:
    """Call the sender; a raised error fails every envelope with its text."""
    if not envelopes:
        return [], None
    try:
        return sender.send(envelopes), None
    except Exception as exc:
        logger.exception(
            "Sender failed for message %s (%d recipients)",
            envelopes[0].message_id,
            len(envelopes),
        )
        reason = str(exc) or exc.__class__.__name__
        return [
            DeliveryOutcome(envelope.recipient_email, "failed", reason)
            for envelope in envelopes
        ], reason


def dispatch_message(
    message_id: str,
    *,
    sender: MessageSender | None = None,
    now: datetime | None = None,
) -> str:
    """Send one due scheduled message; returns ``sent``, ``failed`` or ``skipped``."""
    with get_session() as session:
        message = session.get(Message, message_id)
        if not message or message.delivery_status != "scheduled":
            return "skipped"
        envelopes = build_envelopes(session, message)

    outcomes, failure = _send(sender or get_sender(), envelopes)
    outcome = "failed" if failure else "sent"

    with get_session() as session:
        complete_dispatch(
            session, message_id=message_id, outcome=outcome, reason=failure, now=now
        )
        if outcomes:
            record_delivery_outcomes(
                session, message_id=message_id, outcomes=outcomes, now=now
            )
    return outcome


def hand_off(message_id: str, *, sender: MessageSender | None = None) -> int:
    """Send an immediate message once; returns the number of envelopes sent.

    Messages that are scheduled, missing, or already have delivery records are
    left alone.
    """
    with get_session() as session:
        message = session.get(Message, message_id)
        if not message or message.delivery_status != "sent":
            return 0
        already_reported = session.scalar(
            select(func.count())
            .select_from(MessageDelivery)
            .where(MessageDelivery.message_id == message.id)
        )
        if already_reported:
            return 0
        envelopes = build_envelopes(session, message)

    outcomes, _ = _send(sender or get_sender(), envelopes)
    if outcomes:
        with get_session() as session:
            record_delivery_outcomes(session, message_id=message_id, outcomes=outcomes)
    return len(envelopes)


def run_dispatch_cycle(
    *, now: datetime | None = None, sender: MessageSender | None = None
) -> dict:
    """Dispatch every scheduled message that is due at ``now``."""
    stats = {"dispatched": 0, "failed": 0, "skipped": 0, "batches": 0}
    now = now or utcnow()
    logger.info("Dispatch cycle started (due before %s)", now.isoformat())

    while True:
        with get_session() as session:
            batch = [
                message.id
                for message in due_messages(
                    session, now=now, limit=settings.dispatch_batch_size
                )
            ]
        if not batch:
            break
        for message_id in batch:
            outcome = dispatch_message(message_id, sender=sender, now=now)
            if outcome == "sent":
                stats["dispatched"] += 1
            elif outcome == "failed":
                stats["failed"] += 1
            else:
                stats["skipped"] += 1
        stats["batches"] += 1

    logger.info(
        "Dispatch cycle finished: dispatched=%d, failed=%d, skipped=%d (%d batches)",
        stats["dispatched"],
        stats["failed"],
        stats["skipped"],
        stats["batches"],
    )
    return stats
