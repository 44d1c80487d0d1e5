# voting_api/common/paging.py
from flask import request

from voting_api.common.errors import ValidationFailed

DEFAULT_PAGE = 1
DEFAULT_SIZE = 20
MAX_SIZE = 100

def page_limit():
    try:
        page = max(int(request.args.get("page", DEFAULT_PAGE)), 1)
    except Exception:
        page = DEFAULT_PAGE
    try:
        size = int(request.args.get("size", DEFAULT_SIZE))
        size = max(1, min(size, MAX_SIZE))
    except Exception:
        size = DEFAULT_SIZE
    return page, size

def paginate(query, serialize):
    """Apply ?page/&size to a query -> (items, meta)."""
    page, size = page_limit()
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * size).limit(size).all()
    return [serialize(r) for r in rows], {"page": page, "size": size, "total": total}

def int_arg(name: str, default=None, required: bool = False, source=None):
    """Integer from query args (or the given dict); 422 when malformed or missing."""
    src = request.args if source is None else source
    raw = src.get(name)
    if raw is None or raw == "":
        if required:
            raise ValidationFailed(f"{name} is required")
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")

def as_int(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be an integer")
