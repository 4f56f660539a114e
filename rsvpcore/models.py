"""SQLAlchemy models for rsvpcore."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from .utils import fold_email, utcnow

Base = declarative_base()

EVENT_STATUSES = ("draft", "published", "cancelled")
RSVP_STATUSES = ("attending", "notAttending", "maybe", "pending")
DELIVERY_STATUSES = ("scheduled", "sent", "failed")
RECIPIENT_OUTCOMES = ("pending", "delivered", "failed")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("attending_count >= 0", name="ck_events_attending_nonnegative"),
        CheckConstraint(
            "capacity IS NULL OR attending_count <= capacity",
            name="ck_events_attending_within_capacity",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    status = Column(
        Enum(
            *EVENT_STATUSES,
            name="event_status",
            native_enum=False,
            create_constraint=True,
        ),
        nullable=False,
        default="draft",
    )
    capacity = Column(Integer, nullable=True)
    # Denormalized count of attendees in the "attending" state; only the
    # admission service writes it, always in the same transaction as the row.
    attending_count = Column(Integer, nullable=False, default=0)
    rsvp_deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    attendees = relationship(
        "Attendee",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attendee.registration_date",
    )
    messages = relationship(
        "Message",
        back_populates="event",
        cascade="all, delete",
        passive_deletes=True,
        order_by="desc(Message.created_at)",
    )


class Attendee(Base):
    __tablename__ = "attendees"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(120), nullable=False)
    email = Column(String(320), nullable=False)
    email_key = Column(String(320), nullable=False)
    rsvp_status = Column(
        Enum(
            *RSVP_STATUSES,
            name="rsvp_status",
            native_enum=False,
            create_constraint=True,
        ),
        nullable=False,
        default="pending",
    )
    dietary_requirements = Column(Text, nullable=True)
    phone = Column(String(64), nullable=True)
    company = Column(String(255), nullable=True)
    registration_date = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="attendees")

    @validates("email")
    def _sync_email_key(self, _key, value):
        self.email_key = fold_email(value)
        return value

    @property
    def guest_info(self) -> dict[str, str]:
        info = {}
        if self.phone:
            info["phone"] = self.phone
        if self.company:
            info["company"] = self.company
        return info


# One RSVP per email per event, whatever the letter case.
Index(
    "uq_attendees_event_email",
    Attendee.event_id,
    Attendee.email_key,
    unique=True,
)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_due", "delivery_status", "scheduled_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    subject = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    recipient_filter = Column(JSON, nullable=False, default=dict)
    recipient_count = Column(Integer, nullable=False)
    delivery_status = Column(
        Enum(
            *DELIVERY_STATUSES,
            name="delivery_status",
            native_enum=False,
            create_constraint=True,
        ),
        nullable=False,
    )
    scheduled_date = Column(DateTime, nullable=True)
    sent_date = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="messages")
    deliveries = relationship(
        "MessageDelivery",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MessageDelivery.recipient_email",
    )


class MessageDelivery(Base):
    """Per-recipient outcome reported back by the external sender."""

    __tablename__ = "message_deliveries"
    __table_args__ = (
        Index(
            "uq_message_deliveries_recipient",
            "message_id",
            "recipient_email",
            unique=True,
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    message_id = Column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    attendee_id = Column(
        String(36), ForeignKey("attendees.id", ondelete="SET NULL"), nullable=True
    )
    recipient_email = Column(String(320), nullable=False)
    status = Column(
        Enum(
            *RECIPIENT_OUTCOMES,
            name="recipient_outcome",
            native_enum=False,
            create_constraint=True,
        ),
        nullable=False,
        default="pending",
    )
    detail = Column(Text, nullable=True)
    reported_at = Column(DateTime, default=_now, nullable=False)

    message = relationship("Message", back_populates="deliveries")
