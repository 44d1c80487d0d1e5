from dataclasses import replace
from datetime import timedelta

import pytest

from voting_api.common.errors import CampaignStateError
from voting_api.extensions import db
from voting_api.models.notification_outbox import NotificationOutbox
from voting_api.models.position_change import PositionChange
from voting_api.models.vote import Vote
from voting_api.services.resolution import ResolutionEngine

from conftest import NOW


def _auto_campaign(engine, emp, kind, target):
    campaign = engine.campaigns.create_auto_campaign(engine.campaigns.variant_for(kind), emp, target, NOW)
    db.session.commit()
    return campaign


def _vote(engine, campaign, voters, decisions):
    cand = campaign.candidates[0]
    for v, d in zip(voters, decisions):
        engine.voting.cast_vote(campaign.id, cand.id, v.id, d, now=NOW + timedelta(hours=1))


def test_six_of_ten_agree_passes_and_promotes(engine, make_employee, voters):
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters, ["agree"] * 6 + ["disagree"] * 4)

    after = campaign.end_date + timedelta(minutes=1)
    results = engine.resolution.process_expired(now=after)
    assert len(results) == 1

    db.session.expire_all()
    assert campaign.status == "closed"
    assert campaign.closed_at == after
    assert campaign.results["total_votes"] == 10
    assert campaign.results["agree_votes"] == 6
    assert campaign.results["agree_percentage"] == 60.0
    assert campaign.results["passed"] is True

    assert intern.position == "staff"
    assert intern.position_start_date == after
    change = PositionChange.query.filter_by(campaign_id=campaign.id).one()
    assert (change.change_type, change.old_position, change.new_position, change.status) == (
        "promotion", "intern", "staff", "completed",
    )


def test_process_expired_is_idempotent(engine, make_employee, voters):
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters[:3], ["agree", "agree", "disagree"])

    after = campaign.end_date + timedelta(minutes=1)
    first = engine.resolution.process_expired(now=after)[0]["results"]
    assert engine.resolution.process_expired(now=after + timedelta(hours=1)) == []

    replay = engine.resolution.resolve_campaign(campaign, now=after + timedelta(hours=2))
    assert replay["already_closed"] is True
    assert replay["results"] == first
    assert PositionChange.query.count() == 1


def test_active_campaign_inside_window_is_left_alone(engine, make_employee):
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    assert engine.resolution.process_expired(now=NOW + timedelta(days=1)) == []
    assert campaign.status == "active"


def test_failed_campaign_changes_nothing_but_notifies(engine, make_employee, voters):
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters[:4], ["agree", "disagree", "disagree", "abstain"])

    engine.resolution.process_expired(now=campaign.end_date + timedelta(minutes=1))

    db.session.expire_all()
    assert campaign.results["agree_percentage"] == 25.0
    assert campaign.results["passed"] is False
    assert intern.position == "intern"
    assert PositionChange.query.count() == 0
    resolved = NotificationOutbox.query.filter_by(event_type="campaign_resolved").all()
    assert sorted(r.channel for r in resolved) == ["management", "staff"]


def test_demotion_passes_at_lower_threshold(engine, make_employee, voters):
    emp = make_employee(position="staff")
    campaign = _auto_campaign(engine, emp, "auto_demotion", "intern")
    _vote(engine, campaign, voters[:3], ["agree", "disagree", "disagree"])

    engine.resolution.process_expired(now=campaign.end_date + timedelta(minutes=1))

    db.session.expire_all()
    assert campaign.results["agree_percentage"] == 33.33
    assert campaign.results["passed"] is True
    assert emp.position == "intern"
    assert PositionChange.query.one().change_type == "demotion"


def test_zero_votes_fails(engine, make_employee):
    emp = make_employee(position="staff")
    campaign = _auto_campaign(engine, emp, "auto_demotion", "intern")
    res = engine.resolution.resolve_campaign(campaign, now=campaign.end_date + timedelta(minutes=1))
    assert res["results"]["total_votes"] == 0
    assert res["results"]["agree_percentage"] == 0.0
    assert res["results"]["passed"] is False


def test_delayed_change_runs_from_the_hourly_job(engine, make_employee, voters):
    delayed = ResolutionEngine(
        db.session, replace(engine.policy, position_change_delay_hours=2), engine.campaigns, engine.outbox,
    )
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters[:2], ["agree", "agree"])

    after = campaign.end_date + timedelta(minutes=1)
    delayed.process_expired(now=after)
    change = PositionChange.query.one()
    assert change.status == "pending"
    assert intern.position == "intern"

    assert delayed.execute_pending_changes(now=after + timedelta(hours=1)) == {"due": 0, "completed": 0, "skipped": 0, "failed": 0}
    assert delayed.execute_pending_changes(now=after + timedelta(hours=3)) == {"due": 1, "completed": 1, "skipped": 0, "failed": 0}

    db.session.expire_all()
    assert intern.position == "staff"
    assert change.status == "completed"


def test_change_is_skipped_when_position_moved_meanwhile(engine, make_employee, voters):
    delayed = ResolutionEngine(
        db.session, replace(engine.policy, position_change_delay_hours=1), engine.campaigns, engine.outbox,
    )
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters[:1], ["agree"])
    after = campaign.end_date + timedelta(minutes=1)
    delayed.process_expired(now=after)

    intern.position = "assistant_manager"
    db.session.commit()

    summary = delayed.execute_pending_changes(now=after + timedelta(hours=2))
    assert summary["skipped"] == 1
    change = PositionChange.query.one()
    assert change.status == "skipped"
    assert "assistant_manager" in change.failure_reason


def test_closed_campaign_is_terminal(engine, make_employee):
    emp = make_employee(position="staff")
    campaign = _auto_campaign(engine, emp, "auto_demotion", "intern")
    engine.resolution.resolve_campaign(campaign, now=campaign.end_date + timedelta(minutes=1))

    with pytest.raises(CampaignStateError):
        campaign.status = "active"
    with pytest.raises(CampaignStateError):
        campaign.results = {"passed": True}


def test_threshold_is_compared_on_the_exact_ratio(engine, voters, make_campaign):
    campaign = make_campaign(pass_threshold=66.67)
    _vote(engine, campaign, voters[:3], ["agree", "agree", "disagree"])

    res = engine.resolution.resolve_campaign(campaign, now=campaign.end_date + timedelta(minutes=1))
    # 2/3 displays as 66.67 but sits below the threshold
    assert res["results"]["agree_percentage"] == 66.67
    assert res["results"]["passed"] is False
    assert PositionChange.query.count() == 0


def test_threshold_met_exactly_passes(engine, voters, make_campaign):
    campaign = make_campaign(pass_threshold=50)
    _vote(engine, campaign, voters[:2], ["agree", "disagree"])
    res = engine.resolution.resolve_campaign(campaign, now=campaign.end_date + timedelta(minutes=1))
    assert res["results"]["agree_percentage"] == 50.0
    assert res["results"]["passed"] is True


def test_votes_stop_being_modifiable_when_the_window_ends(engine, voters, make_campaign):
    campaign = make_campaign()
    _vote(engine, campaign, voters[:1], ["agree"])
    vote = Vote.query.filter_by(campaign_id=campaign.id).one()
    assert vote.to_dict(now=NOW)["can_still_modify"] is True

    after = campaign.end_date + timedelta(minutes=1)
    assert vote.to_dict(now=after)["can_still_modify"] is False

    engine.resolution.process_expired(now=after)
    db.session.expire_all()
    assert campaign.status == "closed"
    assert vote.can_still_modify is False
    assert vote.to_dict(now=NOW)["can_still_modify"] is False
    status = engine.voting.modification_status(campaign.id, voters[0].id, now=NOW)
    assert status["can_modify"] is False


def test_failing_position_change_is_recorded(engine, make_employee, voters, monkeypatch):
    delayed = ResolutionEngine(
        db.session, replace(engine.policy, position_change_delay_hours=1), engine.campaigns, engine.outbox,
    )
    intern = make_employee(position="intern")
    campaign = _auto_campaign(engine, intern, "auto_promotion", "staff")
    _vote(engine, campaign, voters[:1], ["agree"])
    after = campaign.end_date + timedelta(minutes=1)
    delayed.process_expired(now=after)

    def broken(change, now):
        raise RuntimeError("registry unavailable")

    monkeypatch.setattr(delayed, "execute_position_change", broken)
    summary = delayed.execute_pending_changes(now=after + timedelta(hours=2))
    assert summary == {"due": 1, "completed": 0, "skipped": 0, "failed": 1}

    db.session.expire_all()
    change = PositionChange.query.one()
    assert change.status == "failed"
    assert "registry unavailable" in change.failure_reason
    assert intern.position == "intern"
    assert NotificationOutbox.query.filter_by(event_type="position_change_failed").count() == 1
    # not picked up again
    assert delayed.execute_pending_changes(now=after + timedelta(hours=3))["due"] == 0


def test_one_broken_campaign_does_not_stop_the_sweep(engine, make_employee, monkeypatch):
    a = _auto_campaign(engine, make_employee(position="staff"), "auto_demotion", "intern")
    b = _auto_campaign(engine, make_employee(position="staff"), "auto_demotion", "intern")
    resolve = engine.resolution.resolve_campaign

    def flaky(campaign, now=None):
        if campaign.id == a.id:
            raise RuntimeError("corrupt row")
        return resolve(campaign, now)

    monkeypatch.setattr(engine.resolution, "resolve_campaign", flaky)
    results = engine.resolution.process_expired(now=a.end_date + timedelta(minutes=1))

    assert [r["campaign_id"] for r in results] == [b.id]
    db.session.expire_all()
    assert a.status == "active"
    assert b.status == "closed"
