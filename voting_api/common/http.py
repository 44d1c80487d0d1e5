# voting_api/common/http.py
from datetime import date, datetime
from typing import Optional

from flask import jsonify, request

def ok(data=None, status=200, **meta):
    payload = {"success": True, "data": data}
    if meta:
        payload["meta"] = meta
    return jsonify(payload), status

def fail(message="Bad Request", status=400, code=None, detail=None, errors=None):
    err = {"message": message}
    if code: err["code"] = code
    if detail: err["detail"] = detail
    if errors: err["errors"] = errors
    return jsonify({"success": False, "error": err}), status

def json_body() -> dict:
    return request.get_json(silent=True) or {}

def parse_dt(s) -> Optional[datetime]:
    """ISO date or datetime string -> naive datetime; None when missing/malformed."""
    if not s:
        return None
    if isinstance(s, datetime):
        return s
    try:
        return datetime.fromisoformat(str(s))
    except ValueError:
        try:
            d = date.fromisoformat(str(s))
        except ValueError:
            return None
        return datetime.combine(d, datetime.min.time())
