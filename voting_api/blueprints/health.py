# voting_api/blueprints/health.py
from datetime import datetime

from flask import Blueprint

from voting_api.common.http import ok

bp = Blueprint("health", __name__, url_prefix="/api")

@bp.get("/health")
def health():
    return ok({"status": "ok", "time": datetime.utcnow().isoformat()})
