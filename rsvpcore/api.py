"""FastAPI application for rsvpcore."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Literal
import tomllib

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import admission, capacity, messaging
from .config import settings
from .crud import require_owned_event
from .database import SessionLocal
from .dispatch import hand_off
from .errors import RSVPCoreError
from .filters import RecipientFilter, evaluate_recipient_count
from .models import Attendee, Event, Message
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import isoformat_or_none, parse_iso_datetime, utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

RsvpStatus = Literal["attending", "notAttending", "maybe", "pending"]


def _load_app_version() -> str:
    """Return the installed package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("rsvpcore")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="rsvpcore", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def acting_user(x_user_id: int | None = Header(None, alias="X-User-Id")) -> int | None:
    """Identity resolved upstream by the auth layer; absent means anonymous."""
    return x_user_id


@app.exception_handler(RSVPCoreError)
async def rsvpcore_error_handler(request: Request, exc: RSVPCoreError):
    return JSONResponse(exc.as_payload(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please try again shortly."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- Payloads --------


class GuestInfoPayload(BaseModel):
    phone: str | None = Field(None, max_length=64)
    company: str | None = Field(None, max_length=255)


class RSVPCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    rsvp_status: RsvpStatus
    dietary_requirements: str | None = None
    guest_info: GuestInfoPayload | None = None


class AttendeeStatusPayload(BaseModel):
    rsvp_status: RsvpStatus


class DateRangePayload(BaseModel):
    start: str | None = Field(None, description="ISO8601 lower bound (inclusive)")
    end: str | None = Field(None, description="ISO8601 upper bound (inclusive)")


class RecipientFilterPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rsvp_status: list[RsvpStatus] | None = Field(None, alias="rsvpStatus")
    registration_date_range: DateRangePayload | None = Field(
        None, alias="registrationDateRange"
    )
    search_query: str | None = Field(None, alias="searchQuery")


class MessageCreatePayload(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    recipient_filter: RecipientFilterPayload = Field(
        default_factory=RecipientFilterPayload
    )
    scheduled_date: str | None = Field(
        None, description="Optional ISO datetime string; omitted sends immediately"
    )


class MessageSchedulePayload(MessageCreatePayload):
    event_id: str


class DeliveryOutcomePayload(BaseModel):
    recipient_email: str
    status: Literal["pending", "delivered", "failed"]
    detail: str | None = None


class DeliveryReportPayload(BaseModel):
    outcomes: list[DeliveryOutcomePayload]


class DispatchPayload(BaseModel):
    outcome: Literal["sent", "failed"]
    reason: str | None = None


# -------- Helpers --------


def _parse_datetime_field(name: str, raw: str | None):
    try:
        return parse_iso_datetime(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid {name}; use ISO8601 format"
        ) from exc


def _recipient_filter(payload: RecipientFilterPayload | None) -> RecipientFilter:
    if payload is None:
        return RecipientFilter()
    wire = payload.model_dump(by_alias=True, exclude_none=True)
    date_range = wire.get("registrationDateRange")
    if date_range:
        wire["registrationDateRange"] = {
            key: _parse_datetime_field(f"registrationDateRange.{key}", value)
            for key, value in date_range.items()
        }
    return RecipientFilter.from_wire(wire)


def _serialize_attendee(attendee: Attendee) -> dict:
    return {
        "id": attendee.id,
        "event_id": attendee.event_id,
        "name": attendee.name,
        "email": attendee.email,
        "rsvp_status": attendee.rsvp_status,
        "dietary_requirements": attendee.dietary_requirements,
        "guest_info": attendee.guest_info,
        "registration_date": isoformat_or_none(attendee.registration_date),
        "last_modified": isoformat_or_none(attendee.last_modified),
    }


def _serialize_capacity(event: Event) -> dict:
    return {
        "event_id": event.id,
        "status": event.status,
        "capacity": event.capacity,
        "attending_count": event.attending_count,
        "remaining": capacity.remaining_slots(event.capacity, event.attending_count),
        "rsvp_deadline": isoformat_or_none(event.rsvp_deadline),
    }


def _serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "event_id": message.event_id,
        "subject": message.subject,
        "content": message.content,
        "recipient_filter": message.recipient_filter or {},
        "recipient_count": message.recipient_count,
        "delivery_status": message.delivery_status,
        "scheduled_date": isoformat_or_none(message.scheduled_date),
        "sent_date": isoformat_or_none(message.sent_date),
        "failure_reason": message.failure_reason,
        "created_by": message.created_by,
        "created_at": isoformat_or_none(message.created_at),
    }


def _queue_hand_off(
    db: Session, background_tasks: BackgroundTasks, message: Message
) -> None:
    """Send immediate messages after the creating transaction is committed."""
    if message.delivery_status != "sent":
        return
    db.commit()
    background_tasks.add_task(hand_off, message.id)


# -------- JSON API (v1) --------


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/events/{event_id}/rsvps", status_code=201)
def api_create_rsvp(
    event_id: str, payload: RSVPCreatePayload, db: Session = Depends(get_db)
):
    attendee = admission.create_rsvp(
        db,
        event_id=event_id,
        name=payload.name,
        email=payload.email,
        rsvp_status=payload.rsvp_status,
        dietary_requirements=payload.dietary_requirements,
        guest_info=(
            payload.guest_info.model_dump(exclude_none=True)
            if payload.guest_info
            else None
        ),
    )
    return {"attendee": _serialize_attendee(attendee)}


@app.get("/api/v1/events/{event_id}/attendees")
def api_list_attendees(
    event_id: str,
    rsvp_status: RsvpStatus | None = Query(None),
    email: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.attendees_per_page, ge=1),
    sort_by: Literal["registration_date", "name", "email", "rsvp_status"] = Query(
        "registration_date"
    ),
    sort_type: Literal["asc", "desc"] = Query("desc"),
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    event = require_owned_event(db, event_id, user_id, action="view attendees")
    attendees = admission.query_attendees(
        db,
        event_id=event.id,
        rsvp_status=rsvp_status,
        email=email,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_type=sort_type,
    )
    return {
        "event": _serialize_capacity(event),
        "attendees": [_serialize_attendee(a) for a in attendees],
        "pagination": {"page": page, "limit": admission.page_size(limit)},
    }


@app.patch("/api/v1/events/{event_id}/attendees/{attendee_id}")
def api_update_attendee_status(
    event_id: str,
    attendee_id: str,
    payload: AttendeeStatusPayload,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    attendee = admission.update_attendee_status(
        db,
        event_id=event_id,
        attendee_id=attendee_id,
        new_status=payload.rsvp_status,
        acting_user_id=user_id,
    )
    return {"attendee": _serialize_attendee(attendee)}


@app.delete("/api/v1/attendees/{attendee_id}")
def api_delete_attendee(attendee_id: str, db: Session = Depends(get_db)):
    attendee = admission.delete_attendee(db, attendee_id=attendee_id)
    return {"attendee": _serialize_attendee(attendee)}


@app.post("/api/v1/events/{event_id}/recipient-count")
def api_recipient_count(
    event_id: str,
    payload: RecipientFilterPayload | None = None,
    db: Session = Depends(get_db),
):
    recipient_filter = _recipient_filter(payload)
    count = evaluate_recipient_count(db, event_id, recipient_filter)
    return {
        "event_id": event_id,
        "recipient_filter": recipient_filter.to_wire(),
        "recipient_count": count,
    }


@app.post("/api/v1/events/{event_id}/messages", status_code=201)
def api_create_message(
    event_id: str,
    payload: MessageCreatePayload,
    background_tasks: BackgroundTasks,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    message = messaging.create_message(
        db,
        event_id=event_id,
        acting_user_id=user_id,
        subject=payload.subject,
        content=payload.content,
        recipient_filter=_recipient_filter(payload.recipient_filter),
        scheduled_date=_parse_datetime_field("scheduled_date", payload.scheduled_date),
    )
    _queue_hand_off(db, background_tasks, message)
    return {"message": _serialize_message(message)}


@app.get("/api/v1/events/{event_id}/messages")
def api_list_messages(
    event_id: str,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    messages = messaging.list_event_messages(db, event_id, user_id)
    return {"messages": [_serialize_message(m) for m in messages]}


@app.post("/api/v1/messages/schedule", status_code=201)
def api_schedule_message(
    payload: MessageSchedulePayload,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    message = messaging.schedule_message(
        db,
        event_id=payload.event_id,
        acting_user_id=user_id,
        subject=payload.subject,
        content=payload.content,
        recipient_filter=_recipient_filter(payload.recipient_filter),
        scheduled_date=_parse_datetime_field("scheduled_date", payload.scheduled_date),
    )
    return {"message": _serialize_message(message)}


@app.get("/api/v1/messages/due")
def api_due_messages(
    limit: int = Query(settings.dispatch_batch_size, ge=1),
    db: Session = Depends(get_db),
):
    now = utcnow()
    messages = messaging.due_messages(db, now=now, limit=limit)
    return {
        "as_of": now.isoformat(),
        "messages": [_serialize_message(m) for m in messages],
    }


@app.get("/api/v1/messages/{message_id}")
def api_get_message(
    message_id: str,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    message = messaging.get_message(db, message_id, user_id)
    return {"message": _serialize_message(message)}


@app.get("/api/v1/messages/{message_id}/delivery-status")
def api_delivery_status(
    message_id: str,
    user_id: int | None = Depends(acting_user),
    db: Session = Depends(get_db),
):
    return messaging.get_delivery_status(db, message_id, user_id)


@app.post("/api/v1/messages/{message_id}/dispatch")
def api_complete_dispatch(
    message_id: str, payload: DispatchPayload, db: Session = Depends(get_db)
):
    message = messaging.complete_dispatch(
        db, message_id=message_id, outcome=payload.outcome, reason=payload.reason
    )
    return {"message": _serialize_message(message)}


@app.post("/api/v1/messages/{message_id}/deliveries")
def api_report_deliveries(
    message_id: str, payload: DeliveryReportPayload, db: Session = Depends(get_db)
):
    message = messaging.record_delivery_outcomes(
        db,
        message_id=message_id,
        outcomes=[
            messaging.DeliveryOutcome(o.recipient_email, o.status, o.detail)
            for o in payload.outcomes
        ],
    )
    return {"message": _serialize_message(message)}
