# voting_api/blueprints/voting.py
from flask import Blueprint

from voting_api.common.http import ok, json_body
from voting_api.common.paging import int_arg
from voting_api.services.engine import current_engine

# shares the /campaigns prefix; ballot routes only
bp = Blueprint("voting", __name__, url_prefix="/api/v1/campaigns")

@bp.get("/<int:campaign_id>/eligibility")
def eligibility(campaign_id: int):
    employee_id = int_arg("employee_id", required=True)
    return ok(current_engine().voting.eligibility(campaign_id, employee_id))

@bp.post("/<int:campaign_id>/votes")
def cast_vote(campaign_id: int):
    j = json_body()
    vote = current_engine().voting.cast_vote(
        campaign_id,
        int_arg("candidate_id", required=True, source=j),
        int_arg("employee_id", required=True, source=j),
        j.get("decision"),
        reason=j.get("reason"),
    )
    return ok(vote.to_dict(), 201)

@bp.put("/<int:campaign_id>/votes/<int:vote_id>")
def modify_vote(campaign_id: int, vote_id: int):
    j = json_body()
    vote = current_engine().voting.modify_vote(
        vote_id,
        int_arg("employee_id", required=True, source=j),
        j.get("decision"),
        reason=j.get("reason"),
        campaign_id=campaign_id,
    )
    return ok(vote.to_dict())

@bp.get("/<int:campaign_id>/votes/<int:vote_id>/history")
def vote_history(campaign_id: int, vote_id: int):
    employee_id = int_arg("employee_id", required=True)
    return ok(current_engine().voting.vote_history(vote_id, employee_id, campaign_id))

@bp.get("/<int:campaign_id>/modification-status")
def modification_status(campaign_id: int):
    employee_id = int_arg("employee_id", required=True)
    return ok(current_engine().voting.modification_status(campaign_id, employee_id))
