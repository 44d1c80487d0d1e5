# voting_api/blueprints/attendance_stats.py
from datetime import datetime

from flask import Blueprint

from voting_api.common.errors import ValidationFailed
from voting_api.common.http import ok, json_body
from voting_api.common.paging import int_arg
from voting_api.services.engine import current_engine

bp = Blueprint("attendance_stats", __name__, url_prefix="/api/v1/attendance-stats")

def _period():
    now = datetime.utcnow()
    year = int_arg("year", default=now.year)
    month = int_arg("month", default=now.month)
    if not 1 <= month <= 12:
        raise ValidationFailed("month must be 1..12")
    return year, month

@bp.post("/events")
def ingest_event():
    out = current_engine().ingest_attendance_event(json_body())
    return ok(out, 201 if out.get("recorded") else 200)

@bp.get("")
def list_period():
    year, month = _period()
    rows = current_engine().stats.list_period_stats(year, month)
    return ok([r.to_dict() for r in rows], year=year, month=month, total=len(rows))

@bp.get("/punishment-candidates")
def punishment_candidates():
    year, month = _period()
    rows = current_engine().stats.find_punishment_candidates(year, month)
    return ok([r.to_dict() for r in rows], year=year, month=month)

@bp.get("/employees/<int:employee_id>")
def employee_period(employee_id: int):
    year, month = _period()
    return ok(current_engine().stats.get_employee_stats(employee_id, year, month))
