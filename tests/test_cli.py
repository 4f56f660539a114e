from __future__ import annotations

import json

from sqlalchemy import update
from typer.testing import CliRunner

from rsvpcore import admission, cli, database
from rsvpcore.crud import create_event
from rsvpcore.models import Event

runner = CliRunner()


def test_reconcile_capacity_repairs_counter():
    with database.get_session() as session:
        event = create_event(session, owner_id=1, title="Drifted", capacity=3)
        admission.create_rsvp(
            session,
            event_id=event.id,
            name="Guest",
            email="guest@example.com",
            rsvp_status="attending",
        )
        session.execute(
            update(Event).where(Event.id == event.id).values(attending_count=0)
        )
        event_id = event.id

    result = runner.invoke(cli.app, ["reconcile-capacity", event_id])

    assert result.exit_code == 0, result.output
    assert "corrected: 0 -> 1" in result.output
    with database.get_session() as session:
        assert session.get(Event, event_id).attending_count == 1


def test_reconcile_capacity_unknown_event():
    result = runner.invoke(cli.app, ["reconcile-capacity", "missing"])
    assert result.exit_code == 1


def test_dispatch_due_reports_stats():
    result = runner.invoke(cli.app, ["dispatch-due"])
    assert result.exit_code == 0, result.output
    assert "'dispatched': 0" in result.output


def test_config_show(tmp_path):
    target = tmp_path / "rsvpcore.toml"
    result = runner.invoke(cli.app, ["config", "--show", "--config-path", str(target)])
    assert result.exit_code == 0, result.output
    shown = json.loads(result.output)
    assert shown["config_path"] == str(target)
    assert shown["dispatch_batch_size"] == 100
