"""
Typed errors raised by the approval engine.

Every error carries a machine-readable ``code`` so the HTTP layer and
callers of ``submit_decision`` can branch on type instead of on message
text.

    ApprovalError
    +-- RequestNotFound        request id unknown
    +-- Unauthorized           role does not match the request's stage
    +-- AlreadyProcessed       stage already acted on, or request closed
    +-- InvalidDecision        unknown action or role, bad budget edit
    |   +-- SignatureRequired  approve without a signature on a signing stage
    +-- PersistenceError       backend write failed, nothing applied
    +-- RequestTimeout         loading the request took too long
    +-- NotificationError      recovered inside the dispatcher only
"""

from typing import Optional


class ApprovalError(Exception):
    code: str = "approval_error"

    def __init__(self, message: str, request_id: Optional[int] = None):
        self.request_id = request_id
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class RequestNotFound(ApprovalError):
    code = "not_found"

    def __init__(self, request_id: int):
        super().__init__(f"Request not found: {request_id}", request_id=request_id)


class Unauthorized(ApprovalError):
    code = "unauthorized"

    def __init__(self, role: str, status: str, request_id: Optional[int] = None):
        self.role = role
        self.status = status
        super().__init__(
            f"Role '{role}' cannot act on a request in status '{status}'",
            request_id=request_id,
        )


class AlreadyProcessed(ApprovalError):
    code = "already_processed"

    def __init__(self, request_id: int, status: Optional[str] = None):
        self.status = status
        detail = f" (current status: {status})" if status else ""
        super().__init__(
            f"Request {request_id} was already processed by someone else{detail}",
            request_id=request_id,
        )


class InvalidDecision(ApprovalError):
    code = "invalid_decision"


class SignatureRequired(InvalidDecision):
    code = "signature_required"

    def __init__(self, stage: str, request_id: Optional[int] = None):
        self.stage = stage
        super().__init__(f"A signature is required to approve at the {stage} stage", request_id=request_id)


class PersistenceError(ApprovalError):
    code = "persistence_error"


class RequestTimeout(ApprovalError):
    code = "timeout"

    def __init__(self, request_id: int, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Loading request {request_id} timed out after {timeout_seconds:g}s",
            request_id=request_id,
        )


class NotificationError(ApprovalError):
    code = "notification_error"
