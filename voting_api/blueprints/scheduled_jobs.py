# voting_api/blueprints/scheduled_jobs.py
from flask import Blueprint

from voting_api.common.http import ok, json_body
from voting_api.common.paging import int_arg
from voting_api.jobs.orchestrator import current_orchestrator
from voting_api.services.engine import current_engine

bp = Blueprint("scheduled_jobs", __name__, url_prefix="/api/v1/scheduled-jobs")

# -------- job registry ----------
@bp.get("/status")
def status():
    return ok(current_orchestrator().status())

@bp.post("/<name>/run")
def run_job(name: str):
    return ok(current_orchestrator().run_now(name))

@bp.get("/health")
def health():
    report = current_orchestrator().health_check()
    return ok(report, 200 if report["healthy"] else 503)

# -------- forced actions ----------
@bp.post("/actions/check-promotions")
def check_promotions():
    return ok(current_engine().check_promotions())

@bp.post("/actions/check-demotions")
def check_demotions():
    j = json_body()
    return ok(current_engine().auto.check_demotions(
        year=int_arg("year", source=j),
        month=int_arg("month", source=j),
    ))

@bp.post("/actions/process-expired-campaigns")
def process_expired():
    return ok(current_engine().process_expired())

@bp.post("/actions/execute-position-changes")
def execute_position_changes():
    return ok(current_engine().execute_position_changes())

@bp.post("/actions/reset-monthly-stats")
def reset_monthly_stats():
    j = json_body()
    return ok(current_engine().reset_monthly_stats(
        year=int_arg("year", source=j),
        month=int_arg("month", source=j),
        force=bool(j.get("force", True)),
    ))

@bp.get("/voting-statistics")
def voting_statistics():
    return ok(current_engine().voting_statistics())
