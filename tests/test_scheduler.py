from __future__ import annotations

from rsvpcore import scheduler
from rsvpcore.dispatch import run_dispatch_cycle


def test_scheduler_registers_dispatch_job():
    started = scheduler.start_scheduler()
    try:
        assert scheduler.start_scheduler() is started
        job = started.get_job("dispatch-due-messages")
        assert job is not None
        assert job.func is run_dispatch_cycle
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval == scheduler.settings.dispatch_interval
    finally:
        scheduler.stop_scheduler()
    assert scheduler._scheduler is None
