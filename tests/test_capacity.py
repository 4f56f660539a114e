from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from rsvpcore import capacity
from rsvpcore.crud import create_event


@pytest.mark.parametrize(
    "limit,count,expected",
    [
        (None, 0, True),
        (None, 10_000, True),
        (0, 0, False),
        (1, 0, True),
        (1, 1, False),
        (5, 4, True),
        (5, 5, False),
        (5, 6, False),
    ],
)
def test_admit(limit, count, expected):
    assert capacity.admit(limit, count) is expected


def test_remaining_slots():
    assert capacity.remaining_slots(None, 3) is None
    assert capacity.remaining_slots(10, 3) == 7
    assert capacity.remaining_slots(2, 5) == 0


def test_claim_slot_stops_at_capacity(session):
    event = create_event(session, owner_id=1, title="Small room", capacity=2)
    session.commit()

    assert capacity.claim_slot(session, event) is True
    assert capacity.claim_slot(session, event) is True
    assert capacity.claim_slot(session, event) is False
    assert event.attending_count == 2


def test_claim_slot_unlimited_event(session):
    event = create_event(session, owner_id=1, title="Open air")
    session.commit()

    for _ in range(25):
        assert capacity.claim_slot(session, event) is True
    assert event.attending_count == 25


def test_zero_capacity_admits_nobody(session):
    event = create_event(session, owner_id=1, title="Closed", capacity=0)
    session.commit()

    assert capacity.claim_slot(session, event) is False
    assert event.attending_count == 0


def test_release_slot_never_goes_negative(session):
    event = create_event(session, owner_id=1, title="Quiet", capacity=3)
    session.commit()

    capacity.claim_slot(session, event)
    capacity.release_slot(session, event)
    capacity.release_slot(session, event)
    assert event.attending_count == 0


def test_store_rejects_count_above_capacity(session):
    event = create_event(session, owner_id=1, title="Guarded", capacity=1)
    session.commit()

    event.attending_count = 2
    with pytest.raises(IntegrityError):
        session.flush()
    session.rollback()
