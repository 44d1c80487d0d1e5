import threading
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from voting_api.common.errors import JobNotFound
from voting_api.jobs.orchestrator import JobOrchestrator, current_orchestrator, register_standard_jobs
from voting_api.services.engine import current_engine

from conftest import NOW

STANDARD_JOBS = [
    "promotion-check",
    "demotion-check",
    "monthly-reset",
    "process-expired-campaigns",
    "execute-position-changes",
    "urgent-check",
    "deliver-notifications",
    "health-check",
]


def _orch(app):
    return JobOrchestrator(app, timezone="UTC")


def test_standard_jobs_are_registered(app):
    orch = current_orchestrator()
    assert orch.names == STANDARD_JOBS
    status = orch.status()
    assert status["scheduler_running"] is False
    assert [j["name"] for j in status["jobs"]] == STANDARD_JOBS
    assert all(j["next_run"] is None for j in status["jobs"])


def test_run_now_records_success(app):
    orch = _orch(app)
    orch.register("answer", lambda: {"value": 42}, IntervalTrigger(minutes=1, timezone="UTC"))

    res = orch.run_now("answer")
    assert res["status"] == "success"
    assert res["source"] == "manual"
    assert res["result"] == {"value": 42}

    job = orch.get("answer")
    assert job.success_count == 1
    assert job.last_status == "success"
    assert job.last_run is not None
    assert job.running is False


def test_failing_job_is_isolated(app):
    orch = _orch(app)

    def boom():
        raise RuntimeError("store went away")

    orch.register("boom", boom, IntervalTrigger(minutes=1, timezone="UTC"))
    orch.register("fine", lambda: "ok", IntervalTrigger(minutes=1, timezone="UTC"))

    res = orch.run_now("boom")
    assert res["status"] == "error"
    assert "store went away" in res["error"]
    assert orch.get("boom").error_count == 1
    assert orch.get("boom").running is False

    assert orch.run_now("fine")["status"] == "success"
    assert orch.health_check(now=NOW)["failing_jobs"] == ["boom"]


def test_overlapping_tick_is_skipped(app):
    orch = _orch(app)
    started, release = threading.Event(), threading.Event()

    def slow():
        started.set()
        release.wait(5)
        return "done"

    orch.register("slow", slow, IntervalTrigger(minutes=1, timezone="UTC"))
    worker = threading.Thread(target=orch.run_now, args=("slow",))
    worker.start()
    assert started.wait(5)

    res = orch.run_now("slow")
    release.set()
    worker.join(5)

    assert res["status"] == "skipped"
    job = orch.get("slow")
    assert job.skipped_count == 1
    assert job.success_count == 1


def test_unknown_job(app):
    with pytest.raises(JobNotFound):
        _orch(app).run_now("nope")


def test_health_flags_expired_backlog(app, make_campaign):
    orch = _orch(app)
    for _ in range(4):
        make_campaign(start_date=NOW - timedelta(days=5), end_date=NOW - timedelta(days=1))
    report = orch.health_check(now=NOW)
    assert report["healthy"] is True
    assert report["expired_unprocessed"] == 4

    make_campaign(start_date=NOW - timedelta(days=5), end_date=NOW - timedelta(days=1))
    report = orch.health_check(now=NOW)
    assert report["healthy"] is False
    assert report["database"] == "ok"
    assert report["backlog_threshold"] == 5


def test_process_expired_job_drains_backlog(app, make_campaign):
    for _ in range(2):
        make_campaign(start_date=NOW - timedelta(days=5), end_date=NOW - timedelta(days=1))
    res = current_orchestrator().run_now("process-expired-campaigns")
    assert res["status"] == "success"
    assert res["result"]["processed"] == 2


def test_scheduler_start_and_shutdown(app):
    orch = _orch(app)
    orch.register("tick", lambda: None, IntervalTrigger(hours=1, timezone="UTC"))
    orch.start()
    try:
        status = orch.status()
        assert status["scheduler_running"] is True
        assert status["jobs"][0]["next_run"] is not None
    finally:
        orch.shutdown(wait=False)
    assert orch.status()["scheduler_running"] is False


def test_monthly_reset_fires_on_the_first_in_the_scheduler_zone(app):
    taipei = ZoneInfo("Asia/Taipei")
    orch = register_standard_jobs(JobOrchestrator(app, timezone="Asia/Taipei"))
    fire = orch.get("monthly-reset").trigger.get_next_fire_time(None, datetime(2026, 1, 20, tzinfo=taipei))
    assert fire == datetime(2026, 2, 1, tzinfo=taipei)
    # still January 31 in UTC
    as_utc = fire.astimezone(timezone.utc)
    assert (as_utc.month, as_utc.day) == (1, 31)

    res = current_engine().scheduled_period_reset(now=as_utc, tz=orch.timezone)
    assert (res["year"], res["month"], res["skipped"]) == (2026, 2, False)
