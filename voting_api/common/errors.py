# voting_api/common/errors.py
from enum import Enum

from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from voting_api.common.http import fail


class APIError(Exception):
    """Custom API Error class."""
    def __init__(self, code, message, status_code=400, payload=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.payload = payload


class ValidationFailed(APIError):
    def __init__(self, message, payload=None):
        super().__init__("VALIDATION_ERROR", message, status_code=422, payload=payload)


class RejectionReason(str, Enum):
    CAMPAIGN_NOT_FOUND = "CAMPAIGN_NOT_FOUND"
    CANDIDATE_NOT_FOUND = "CANDIDATE_NOT_FOUND"
    VOTE_NOT_FOUND = "VOTE_NOT_FOUND"
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    CAMPAIGN_NOT_ACTIVE = "CAMPAIGN_NOT_ACTIVE"
    ALREADY_VOTED = "ALREADY_VOTED"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NOT_VOTE_OWNER = "NOT_VOTE_OWNER"
    MODIFICATION_NOT_ALLOWED = "MODIFICATION_NOT_ALLOWED"
    MODIFICATION_LIMIT_REACHED = "MODIFICATION_LIMIT_REACHED"


_REJECTION_STATUS = {
    RejectionReason.CAMPAIGN_NOT_FOUND: 404,
    RejectionReason.CANDIDATE_NOT_FOUND: 404,
    RejectionReason.VOTE_NOT_FOUND: 404,
    RejectionReason.EMPLOYEE_NOT_FOUND: 404,
    RejectionReason.CAMPAIGN_NOT_ACTIVE: 409,
    RejectionReason.ALREADY_VOTED: 409,
    RejectionReason.NOT_ELIGIBLE: 403,
    RejectionReason.NOT_VOTE_OWNER: 403,
    RejectionReason.MODIFICATION_NOT_ALLOWED: 403,
    RejectionReason.MODIFICATION_LIMIT_REACHED: 409,
}


class VoteRejected(APIError):
    """Expected business-rule outcome of a ballot operation, not a system fault."""
    def __init__(self, reason: RejectionReason, message=None, payload=None):
        super().__init__(
            reason.value,
            message or reason.value.replace("_", " ").capitalize(),
            status_code=_REJECTION_STATUS[reason],
            payload=payload,
        )
        self.reason = reason


class CampaignStateError(APIError):
    def __init__(self, message, payload=None):
        super().__init__("CAMPAIGN_STATE_ERROR", message, status_code=409, payload=payload)


class JobNotFound(APIError):
    def __init__(self, name):
        super().__init__("JOB_NOT_FOUND", f"No scheduled job named {name!r}", status_code=404)


def register_error_handlers(app):
    @app.errorhandler(APIError)
    def _api_error(e: APIError):
        return fail(message=e.message, status=e.status_code, code=e.code, detail=e.payload)

    @app.errorhandler(HTTPException)
    def _http(e: HTTPException):
        return fail(e.description or e.name, status=e.code or 500)

    @app.errorhandler(IntegrityError)
    def _integrity(e: IntegrityError):
        # 409 for unique/FK violations
        return fail(
            message="Conflict / integrity error",
            status=409,
            code="CONSTRAINT_ERROR",
            detail=str(e.orig) if getattr(e, "orig", None) else str(e),
        )

    @app.errorhandler(Exception)
    def _500(e: Exception):
        app.logger.exception(e)
        return fail("Internal server error", status=500)
