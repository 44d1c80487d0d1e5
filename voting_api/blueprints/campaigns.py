# voting_api/blueprints/campaigns.py
from datetime import datetime

from flask import Blueprint, request

from voting_api.common.http import ok, json_body
from voting_api.common.paging import paginate
from voting_api.services.engine import current_engine

bp = Blueprint("campaigns", __name__, url_prefix="/api/v1/campaigns")

# -------- routes ----------
@bp.get("")
def list_campaigns():
    eng = current_engine()
    q = eng.campaigns.list_campaigns(
        status=request.args.get("status") or None,
        kind=request.args.get("kind") or None,
    )
    now = datetime.utcnow()
    items, meta = paginate(q, lambda c: c.to_dict(now=now))
    return ok(items, **meta)

@bp.post("")
def create_campaign():
    campaign = current_engine().campaigns.create_campaign(json_body())
    return ok(campaign.to_dict(include_candidates=True), 201)

@bp.get("/conflicts")
def conflicts():
    return ok(current_engine().campaigns.find_conflicts(datetime.utcnow()))

@bp.get("/<int:campaign_id>")
def get_campaign(campaign_id: int):
    campaign = current_engine().campaigns.get(campaign_id)
    return ok(campaign.to_dict(include_candidates=True, now=datetime.utcnow()))

@bp.post("/<int:campaign_id>/activate")
def activate(campaign_id: int):
    campaign = current_engine().campaigns.activate_campaign(campaign_id)
    return ok(campaign.to_dict())

@bp.get("/<int:campaign_id>/stats")
def stats(campaign_id: int):
    return ok(current_engine().voting.get_campaign_stats(campaign_id))
