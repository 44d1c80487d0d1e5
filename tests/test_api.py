from datetime import datetime, timedelta

from voting_api.extensions import db
from voting_api.models.campaign import Campaign


def _open_campaign(make_campaign):
    now = datetime.utcnow()
    return make_campaign(start_date=now - timedelta(days=1), end_date=now + timedelta(days=2))


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json()["data"]["status"] == "ok"


def test_create_and_list_campaigns(client, make_employee):
    emp = make_employee(position="intern")
    r = client.post("/api/v1/campaigns", json={
        "name": "Store S1 vote",
        "start_date": "2026-03-10",
        "end_date": "2026-03-13",
        "candidates": [emp.id],
    })
    assert r.status_code == 201
    body = r.get_json()["data"]
    assert body["status"] == "draft"
    # candidates are pseudonymous
    assert "employee_id" not in body["candidates"][0]

    r = client.get("/api/v1/campaigns?status=draft")
    j = r.get_json()
    assert j["meta"]["total"] == 1
    assert j["data"][0]["id"] == body["id"]

    r = client.post(f"/api/v1/campaigns/{body['id']}/activate")
    assert r.status_code == 200
    assert r.get_json()["data"]["status"] == "active"
    assert client.post(f"/api/v1/campaigns/{body['id']}/activate").status_code == 409


def test_create_campaign_validation_error(client):
    r = client.post("/api/v1/campaigns", json={"name": ""})
    assert r.status_code == 422
    assert r.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_unknown_campaign_is_404(client):
    r = client.get("/api/v1/campaigns/999")
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "CAMPAIGN_NOT_FOUND"


def test_vote_cast_modify_and_history(client, make_campaign, voters):
    c = _open_campaign(make_campaign)
    cand_id = c.candidates[0].id
    voter = voters[0]

    r = client.get(f"/api/v1/campaigns/{c.id}/eligibility?employee_id={voter.id}")
    assert r.get_json()["data"]["eligible"] is True

    r = client.post(f"/api/v1/campaigns/{c.id}/votes", json={
        "candidate_id": cand_id, "employee_id": voter.id, "decision": "agree",
    })
    assert r.status_code == 201
    vote_id = r.get_json()["data"]["id"]

    r = client.post(f"/api/v1/campaigns/{c.id}/votes", json={
        "candidate_id": cand_id, "employee_id": voter.id, "decision": "agree",
    })
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "ALREADY_VOTED"

    r = client.put(f"/api/v1/campaigns/{c.id}/votes/{vote_id}", json={
        "employee_id": voter.id, "decision": "disagree", "reason": "changed my mind",
    })
    assert r.status_code == 200
    assert r.get_json()["data"]["current_decision"] == "disagree"

    r = client.put(f"/api/v1/campaigns/{c.id}/votes/{vote_id}", json={
        "employee_id": voters[1].id, "decision": "agree",
    })
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "NOT_VOTE_OWNER"

    r = client.get(f"/api/v1/campaigns/{c.id}/votes/{vote_id}/history?employee_id={voter.id}")
    mods = r.get_json()["data"]["modifications"]
    assert [(m["old_decision"], m["new_decision"]) for m in mods] == [("agree", "disagree")]

    r = client.get(f"/api/v1/campaigns/{c.id}/modification-status?employee_id={voter.id}")
    status = r.get_json()["data"]
    assert status["remaining_modifications"] == 2
    assert status["can_modify"] is True

    r = client.get(f"/api/v1/campaigns/{c.id}/stats")
    stats = r.get_json()["data"]
    assert stats["total_votes"] == 1
    assert stats["warnings"] == []


def test_candidate_cannot_vote(client, make_campaign):
    c = _open_campaign(make_campaign)
    cand = c.candidates[0]
    r = client.post(f"/api/v1/campaigns/{c.id}/votes", json={
        "candidate_id": cand.id, "employee_id": cand.employee_id, "decision": "agree",
    })
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "NOT_ELIGIBLE"


def test_vote_requires_employee_id(client, make_campaign):
    c = _open_campaign(make_campaign)
    r = client.post(f"/api/v1/campaigns/{c.id}/votes", json={"candidate_id": c.candidates[0].id})
    assert r.status_code == 422


def test_attendance_event_and_period_views(client, make_employee):
    emp = make_employee(position="staff")
    for i in range(4):
        r = client.post("/api/v1/attendance-stats/events", json={
            "employeeId": emp.id, "clockType": "in", "status": "late",
            "clockTime": f"2026-03-0{i + 2}T09:02:00", "eventRef": f"api-{i}",
        })
        assert r.status_code == 201
    assert r.get_json()["data"]["demotion"]["outcome"] == "created"

    r = client.post("/api/v1/attendance-stats/events", json={
        "employeeId": emp.id, "clockType": "in", "status": "late",
        "clockTime": "2026-03-02T09:02:00", "eventRef": "api-0",
    })
    assert r.status_code == 200
    assert r.get_json()["data"]["recorded"] is False

    r = client.get(f"/api/v1/attendance-stats/employees/{emp.id}?year=2026&month=3")
    data = r.get_json()["data"]
    assert data["late_count"] == 4
    assert data["late_minutes_total"] == 8
    assert data["is_punishment_triggered"] is True

    r = client.get("/api/v1/attendance-stats?year=2026&month=3")
    assert r.get_json()["meta"]["total"] == 1
    # already latched, so no longer a candidate
    r = client.get("/api/v1/attendance-stats/punishment-candidates?year=2026&month=3")
    assert r.get_json()["data"] == []

    assert client.get("/api/v1/attendance-stats?year=2026&month=13").status_code == 422

    r = client.post("/api/v1/attendance-stats/events", json={
        "employeeId": emp.id, "clockType": "in", "status": "late",
        "clockTime": "2026-03-09T09:30:00", "eventRef": "api-bad", "lateMinutes": "half an hour",
    })
    assert r.status_code == 422


def test_scheduled_job_endpoints(client, make_campaign):
    r = client.get("/api/v1/scheduled-jobs/status")
    assert r.status_code == 200
    assert len(r.get_json()["data"]["jobs"]) == 8

    r = client.post("/api/v1/scheduled-jobs/unknown/run")
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "JOB_NOT_FOUND"

    now = datetime.utcnow()
    c = make_campaign(start_date=now - timedelta(days=4), end_date=now - timedelta(days=1))
    r = client.post("/api/v1/scheduled-jobs/actions/process-expired-campaigns")
    assert r.get_json()["data"]["processed"] == 1
    db.session.expire_all()
    assert db.session.get(Campaign, c.id).status == "closed"

    r = client.get("/api/v1/scheduled-jobs/health")
    assert r.status_code == 200
    assert r.get_json()["data"]["healthy"] is True

    r = client.post("/api/v1/scheduled-jobs/actions/reset-monthly-stats", json={"year": 2026, "month": 3})
    assert r.get_json()["data"]["skipped"] is False

    r = client.get("/api/v1/scheduled-jobs/voting-statistics")
    data = r.get_json()["data"]
    assert data["campaigns"]["closed"] == 1
    assert data["campaigns"]["failed"] == 1


def test_campaign_conflicts_endpoint(client, make_campaign, make_employee):
    emp = make_employee(position="intern")
    _open_campaign(make_campaign)
    now = datetime.utcnow()
    make_campaign(candidate=emp, start_date=now - timedelta(days=1), end_date=now + timedelta(days=1))
    make_campaign(candidate=emp, start_date=now - timedelta(hours=2), end_date=now + timedelta(days=1))
    r = client.get("/api/v1/campaigns/conflicts")
    data = r.get_json()["data"]
    assert data["active_campaigns"] == 3
    assert data["has_conflicts"] is True
    assert data["conflicts"][0]["employee_id"] == emp.id
