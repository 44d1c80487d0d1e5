from datetime import timedelta

import pytest

from voting_api.common.errors import CampaignStateError, ValidationFailed, VoteRejected, RejectionReason
from voting_api.extensions import db
from voting_api.services.campaigns import (
    DemotionPolicy, ManualPolicy, PromotionPolicy, policy_for, voting_window,
)

from conftest import NOW


def test_policy_for_maps_kinds_to_variants(engine):
    promo = policy_for("auto_promotion", engine.policy)
    demo = policy_for("auto_demotion", engine.policy)
    manual = policy_for("manual", engine.policy)
    assert isinstance(promo, PromotionPolicy) and promo.pass_threshold == 50.0 and promo.duration_days == 5
    assert isinstance(demo, DemotionPolicy) and demo.pass_threshold == 30.0 and demo.duration_days == 3
    assert demo.priority > promo.priority
    assert isinstance(manual, ManualPolicy)
    with pytest.raises(ValidationFailed):
        policy_for("referendum", engine.policy)


def test_voting_window_ends_at_end_of_day():
    start, end = voting_window(NOW, 3)
    assert start == NOW
    assert (end.date() - NOW.date()).days == 3
    assert (end.hour, end.minute, end.second) == (23, 59, 59)


def test_manual_campaign_excludes_candidates_from_voting(engine, make_employee):
    a, b = make_employee(position="intern"), make_employee(position="intern")
    c = engine.campaigns.create_campaign({
        "name": "Store S1 review",
        "start_date": "2026-03-10",
        "end_date": "2026-03-12T18:00:00",
        "candidates": [a.id, b.id],
        "eligible_voter_criteria": {"positions": ["staff"], "exclude_employees": [99]},
    }, now=NOW)

    assert c.status == "draft"
    assert c.kind == "manual"
    assert c.system_generated is False
    assert [x.anonymous_id for x in c.candidates] == [f"CANDIDATE_{c.id}_001", f"CANDIDATE_{c.id}_002"]
    assert c.eligible_voter_criteria["exclude_employees"] == sorted([99, a.id, b.id])


@pytest.mark.parametrize("patch", [
    {"name": ""},
    {"end_date": "2026-03-09"},
    {"start_date": "not-a-date"},
    {"candidates": []},
    {"pass_threshold": 120},
    {"status": "closed"},
    {"target_position": "ceo"},
    {"eligible_voter_criteria": {"positions": ["janitor"]}},
    {"eligible_voter_criteria": {"min_tenure_days": -1}},
])
def test_manual_campaign_validation(engine, make_employee, patch):
    emp = make_employee(position="intern")
    data = {
        "name": "Vote",
        "start_date": "2026-03-10",
        "end_date": "2026-03-12",
        "candidates": [emp.id],
    }
    data.update(patch)
    with pytest.raises(ValidationFailed):
        engine.campaigns.create_campaign(data, now=NOW)


def test_unknown_candidates_are_rejected(engine):
    with pytest.raises(ValidationFailed) as exc:
        engine.campaigns.create_campaign({
            "name": "Vote", "start_date": "2026-03-10", "end_date": "2026-03-12", "candidates": [404],
        }, now=NOW)
    assert exc.value.payload == {"employee_ids": [404]}


def test_activate_only_from_draft(engine, make_campaign):
    c = make_campaign(status="draft")
    engine.campaigns.activate_campaign(c.id, now=NOW)
    db.session.expire_all()
    assert c.status == "active"

    with pytest.raises(CampaignStateError):
        engine.campaigns.activate_campaign(c.id, now=NOW)


def test_transitions_follow_lifecycle(engine, make_campaign):
    c = make_campaign(status="draft")
    with pytest.raises(CampaignStateError):
        c.status = "closed"
    db.session.rollback()

    engine.campaigns.transition(c, "active", NOW)
    engine.campaigns.transition(c, "closed", NOW)
    assert c.closed_at == NOW
    with pytest.raises(CampaignStateError):
        engine.campaigns.transition(c, "closed", NOW)


def test_missing_campaign(engine):
    with pytest.raises(VoteRejected) as exc:
        engine.campaigns.get(12345)
    assert exc.value.reason is RejectionReason.CAMPAIGN_NOT_FOUND


def test_conflicts_report_shared_trigger_employee(engine, make_employee, make_campaign):
    emp = make_employee(position="intern")
    auto = engine.campaigns.create_auto_campaign(
        engine.campaigns.variant_for("auto_promotion"), emp, "staff", NOW - timedelta(hours=1),
    )
    db.session.commit()
    manual = make_campaign(candidate=emp)
    make_campaign()

    report = engine.campaigns.find_conflicts(NOW)
    assert report["active_campaigns"] == 3
    assert report["has_conflicts"] is True
    assert report["conflicts"] == [{
        "type": "employee_multiple_campaigns",
        "employee_id": emp.id,
        "campaigns": [auto.id, manual.id],
        "severity": "medium",
    }]
