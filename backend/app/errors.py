"""
Domain errors.

Core modules raise these; `main.py` turns them into `{"detail", "reason"}` JSON
responses. The ingestion loop logs them and carries on with the next tick.
"""

from typing import Optional


class DispatchError(Exception):
    status_code = 400
    reason = "error"

    def __init__(self, detail: str, *, reason: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if reason:
            self.reason = reason


class InvalidInput(DispatchError):
    status_code = 400
    reason = "INVALID_INPUT"


class NotFound(DispatchError):
    status_code = 404
    reason = "NOT_FOUND"


class SourceUnavailable(DispatchError):
    status_code = 503
    reason = "SOURCE_UNAVAILABLE"


class MalformedRecord(DispatchError):
    reason = "MALFORMED_RECORD"


class TransactionFailure(DispatchError):
    status_code = 500
    reason = "TRANSACTION_FAILURE"

    def __init__(self, detail: str, *, phase: str):
        super().__init__(detail)
        self.phase = phase


class ReleaseRejected(DispatchError):
    status_code = 409
    reason = "RELEASE_REJECTED"


class AlreadyReleased(ReleaseRejected):
    reason = "ALREADY_RELEASED"


class GatepassInUse(ReleaseRejected):
    reason = "GATEPASS_IN_USE"


class ApprovalRequired(ReleaseRejected):
    status_code = 403
    reason = "APPROVAL_REQUIRED"


class DuplicateActiveSession(DispatchError):
    status_code = 409
    reason = "DUPLICATE_ACTIVE_SESSION"


class SessionRejected(DispatchError):
    status_code = 409
    reason = "SESSION_REJECTED"


class OtpRejected(DispatchError):
    status_code = 400
    reason = "OTP_REJECTED"


class Conflict(DispatchError):
    status_code = 409
    reason = "CONFLICT"


class ConfigurationError(DispatchError):
    status_code = 500
    reason = "NOT_CONFIGURED"


class Forbidden(DispatchError):
    status_code = 403
    reason = "FORBIDDEN"
