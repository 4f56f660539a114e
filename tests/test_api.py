from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from rsvpcore import admission, api, database, dispatch
from rsvpcore.crud import create_event
from rsvpcore.messaging import DeliveryOutcome
from rsvpcore.utils import utcnow

OWNER = 42
OWNER_HEADERS = {"X-User-Id": str(OWNER)}


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


class CollectingSender(dispatch.MessageSender):
    def __init__(self):
        self.sent: list[str] = []

    def send(self, envelopes):
        self.sent.extend(e.recipient_email for e in envelopes)
        return [DeliveryOutcome(e.recipient_email, "delivered") for e in envelopes]


def _make_event(**kwargs) -> str:
    kwargs.setdefault("owner_id", OWNER)
    kwargs.setdefault("title", "API Test")
    with database.get_session() as session:
        return create_event(session, **kwargs).id


def _rsvp(client, event_id, email, status="attending", **extra):
    payload = {"name": email.split("@")[0], "email": email, "rsvp_status": status}
    payload.update(extra)
    return client.post(f"/api/v1/events/{event_id}/rsvps", json=payload)


def _iso(dt) -> str:
    return dt.replace(microsecond=0).isoformat()


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_rsvp(client):
    event_id = _make_event(capacity=5)
    response = _rsvp(
        client,
        event_id,
        "ada@example.com",
        dietary_requirements="vegan",
        guest_info={"company": "Engines Ltd"},
    )
    assert response.status_code == 201
    attendee = response.json()["attendee"]
    assert attendee["event_id"] == event_id
    assert attendee["rsvp_status"] == "attending"
    assert attendee["guest_info"] == {"company": "Engines Ltd"}
    assert attendee["dietary_requirements"] == "vegan"


def test_create_rsvp_error_payloads(client):
    event_id = _make_event(capacity=1)
    assert _rsvp(client, event_id, "first@example.com").status_code == 201

    full = _rsvp(client, event_id, "second@example.com")
    assert full.status_code == 409
    assert full.json() == {
        "error": "EventFull",
        "message": "This event has reached its maximum number of attendees.",
    }

    duplicate = _rsvp(client, event_id, "FIRST@example.com", status="maybe")
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "Conflict"

    missing = _rsvp(client, "missing", "x@example.com")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"


def test_create_rsvp_business_rule_failures(client):
    draft_id = _make_event(status="draft")
    response = _rsvp(client, draft_id, "early@example.com")
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidState"

    closed_id = _make_event(rsvp_deadline=utcnow() - timedelta(minutes=1))
    response = _rsvp(client, closed_id, "late@example.com")
    assert response.status_code == 422
    assert response.json()["error"] == "DeadlinePassed"


def test_create_rsvp_validates_payload(client):
    event_id = _make_event()
    assert _rsvp(client, event_id, "guest@example.com", status="yes").status_code == 422
    assert _rsvp(client, event_id, "not-an-email").status_code == 422


def test_failed_rsvp_leaves_no_partial_writes(client):
    event_id = _make_event(capacity=1)
    _rsvp(client, event_id, "first@example.com")
    _rsvp(client, event_id, "second@example.com")

    listing = client.get(f"/api/v1/events/{event_id}/attendees", headers=OWNER_HEADERS)
    assert listing.status_code == 200
    body = listing.json()
    assert [a["email"] for a in body["attendees"]] == ["first@example.com"]
    assert body["event"]["attending_count"] == 1
    assert body["event"]["remaining"] == 0


def test_attendee_listing_requires_owner(client):
    event_id = _make_event()
    response = client.get(f"/api/v1/events/{event_id}/attendees")
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_attendee_listing_reports_applied_page_size(client, monkeypatch):
    monkeypatch.setattr(
        admission,
        "settings",
        dataclasses.replace(admission.settings, max_attendees_per_page=2),
    )
    event_id = _make_event()
    for index in range(3):
        assert _rsvp(client, event_id, f"guest{index}@example.com").status_code == 201

    response = client.get(
        f"/api/v1/events/{event_id}/attendees",
        params={"limit": 50},
        headers=OWNER_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"] == {"page": 1, "limit": 2}
    assert len(body["attendees"]) == 2


def test_update_attendee_status(client):
    event_id = _make_event(capacity=1)
    holder = _rsvp(client, event_id, "holder@example.com").json()["attendee"]
    waiting = _rsvp(client, event_id, "waiting@example.com", status="maybe").json()[
        "attendee"
    ]
    url = f"/api/v1/events/{event_id}/attendees/{waiting['id']}"

    blocked = client.patch(
        url, json={"rsvp_status": "attending"}, headers=OWNER_HEADERS
    )
    assert blocked.status_code == 409
    assert blocked.json()["error"] == "EventFull"

    forbidden = client.patch(
        url, json={"rsvp_status": "attending"}, headers={"X-User-Id": "1"}
    )
    assert forbidden.status_code == 403

    released = client.patch(
        f"/api/v1/events/{event_id}/attendees/{holder['id']}",
        json={"rsvp_status": "notAttending"},
        headers=OWNER_HEADERS,
    )
    assert released.status_code == 200

    admitted = client.patch(
        url, json={"rsvp_status": "attending"}, headers=OWNER_HEADERS
    )
    assert admitted.status_code == 200
    assert admitted.json()["attendee"]["rsvp_status"] == "attending"


def test_delete_attendee(client):
    event_id = _make_event(capacity=1)
    attendee = _rsvp(client, event_id, "bye@example.com").json()["attendee"]

    response = client.delete(f"/api/v1/attendees/{attendee['id']}")
    assert response.status_code == 200
    assert response.json()["attendee"]["email"] == "bye@example.com"
    assert client.delete(f"/api/v1/attendees/{attendee['id']}").status_code == 404
    assert _rsvp(client, event_id, "next@example.com").status_code == 201


def test_recipient_count(client):
    event_id = _make_event()
    _rsvp(client, event_id, "ada@example.com")
    _rsvp(client, event_id, "grace@navy.mil", status="maybe")
    _rsvp(client, event_id, "alan@example.com", status="notAttending")

    response = client.post(
        f"/api/v1/events/{event_id}/recipient-count",
        json={"rsvpStatus": ["attending", "maybe"], "searchQuery": "example"},
    )
    assert response.status_code == 200
    assert response.json()["recipient_count"] == 1

    everyone = client.post(f"/api/v1/events/{event_id}/recipient-count", json={})
    assert everyone.json()["recipient_count"] == 3

    bad_date = client.post(
        f"/api/v1/events/{event_id}/recipient-count",
        json={"registrationDateRange": {"start": "yesterday"}},
    )
    assert bad_date.status_code == 400

    missing = client.post("/api/v1/events/missing/recipient-count", json={})
    assert missing.status_code == 404


def test_immediate_message_is_handed_off(client):
    sender = CollectingSender()
    dispatch.set_sender(sender)
    event_id = _make_event()
    _rsvp(client, event_id, "a@example.com")
    _rsvp(client, event_id, "b@example.com", status="maybe")

    response = client.post(
        f"/api/v1/events/{event_id}/messages",
        json={
            "subject": "Welcome",
            "content": "Doors open at 7.",
            "recipient_filter": {"rsvpStatus": ["attending"]},
        },
        headers=OWNER_HEADERS,
    )
    assert response.status_code == 201
    message = response.json()["message"]
    assert message["delivery_status"] == "sent"
    assert message["recipient_count"] == 1
    assert sender.sent == ["a@example.com"]

    status = client.get(
        f"/api/v1/messages/{message['id']}/delivery-status", headers=OWNER_HEADERS
    )
    assert status.status_code == 200
    assert status.json()["delivered"] == 1
    assert status.json()["pending"] == 0


def test_message_requires_owner(client):
    event_id = _make_event()
    response = client.post(
        f"/api/v1/events/{event_id}/messages",
        json={"subject": "Hi", "content": "There"},
        headers={"X-User-Id": "9"},
    )
    assert response.status_code == 403


def test_schedule_message_flow(client):
    event_id = _make_event()
    _rsvp(client, event_id, "a@example.com")
    future = _iso(utcnow() + timedelta(days=2))

    missing = client.post(
        "/api/v1/messages/schedule",
        json={"event_id": event_id, "subject": "Soon", "content": "Reminder"},
        headers=OWNER_HEADERS,
    )
    assert missing.status_code == 400
    assert missing.json()["error"] == "MissingSchedule"

    past = client.post(
        "/api/v1/messages/schedule",
        json={
            "event_id": event_id,
            "subject": "Soon",
            "content": "Reminder",
            "scheduled_date": _iso(utcnow() - timedelta(hours=1)),
        },
        headers=OWNER_HEADERS,
    )
    assert past.status_code == 422
    assert past.json()["error"] == "InvalidSchedule"

    created = client.post(
        "/api/v1/messages/schedule",
        json={
            "event_id": event_id,
            "subject": "Soon",
            "content": "Reminder",
            "scheduled_date": f"{future}Z",
        },
        headers=OWNER_HEADERS,
    )
    assert created.status_code == 201
    message = created.json()["message"]
    assert message["delivery_status"] == "scheduled"
    assert message["scheduled_date"] == future

    listed = client.get(f"/api/v1/events/{event_id}/messages", headers=OWNER_HEADERS)
    assert [m["id"] for m in listed.json()["messages"]] == [message["id"]]

    fetched = client.get(f"/api/v1/messages/{message['id']}", headers=OWNER_HEADERS)
    assert fetched.json()["message"]["subject"] == "Soon"
    assert client.get(f"/api/v1/messages/{message['id']}").status_code == 403


def test_dispatch_hook_and_delivery_reports(client):
    event_id = _make_event()
    _rsvp(client, event_id, "a@example.com")
    _rsvp(client, event_id, "b@example.com")
    created = client.post(
        f"/api/v1/events/{event_id}/messages",
        json={
            "subject": "Later",
            "content": "Body",
            "scheduled_date": _iso(utcnow() + timedelta(hours=1)),
        },
        headers=OWNER_HEADERS,
    ).json()["message"]
    message_url = f"/api/v1/messages/{created['id']}"

    early = client.post(
        f"{message_url}/deliveries",
        json={
            "outcomes": [{"recipient_email": "a@example.com", "status": "delivered"}]
        },
    )
    assert early.status_code == 422
    assert early.json()["error"] == "InvalidState"

    fired = client.post(f"{message_url}/dispatch", json={"outcome": "sent"})
    assert fired.status_code == 200
    assert fired.json()["message"]["delivery_status"] == "sent"
    repeat = client.post(
        f"{message_url}/dispatch", json={"outcome": "failed", "reason": "late"}
    )
    assert repeat.status_code == 200
    assert repeat.json()["message"]["delivery_status"] == "sent"

    reported = client.post(
        f"{message_url}/deliveries",
        json={
            "outcomes": [
                {"recipient_email": "a@example.com", "status": "delivered"},
                {
                    "recipient_email": "b@example.com",
                    "status": "failed",
                    "detail": "bounce",
                },
            ]
        },
    )
    assert reported.status_code == 200

    status = client.get(f"{message_url}/delivery-status", headers=OWNER_HEADERS).json()
    assert status["total_recipients"] == 2
    assert (status["sent"], status["delivered"], status["failed"]) == (2, 1, 1)
    assert status["pending"] == 0


def test_operational_error_is_not_a_business_outcome(client, monkeypatch):
    def locked(*args, **kwargs):
        raise OperationalError("UPDATE events", {}, Exception("database is locked"))

    monkeypatch.setattr(api.admission, "create_rsvp", locked)
    event_id = _make_event()
    response = _rsvp(client, event_id, "a@example.com")
    assert response.status_code == 503
    assert "error" not in response.json()
