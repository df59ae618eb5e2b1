"""
Licensing Workflow - Error taxonomy

Every failure the core reports is a WorkflowError subclass carrying a stable
code. Precondition failures are raised before anything is written; the
service that raised them rolls back its session.
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all orchestration failures."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.code, "message": self.message, **self.context}


# =============================================================================
# LOOKUP
# =============================================================================

class NotFound(WorkflowError):
    """Case, officer, document or attempt does not exist."""
    code = "NOT_FOUND"


class OfficerNotFound(NotFound):
    code = "OFFICER_NOT_FOUND"


# =============================================================================
# STATE MACHINE / INPUT
# =============================================================================

class InvalidTransition(WorkflowError):
    """Current status does not allow the requested transition."""
    code = "INVALID_TRANSITION"


class ValidationError(WorkflowError):
    """Mandatory input missing or malformed."""
    code = "VALIDATION_ERROR"


class InvalidState(WorkflowError):
    """Record is not in a state that permits the operation."""
    code = "INVALID_STATE"


class RetryLimitExceeded(InvalidState):
    """Signature attempt exhausted its retries; a new attempt is required."""
    code = "RETRY_LIMIT_EXCEEDED"


# =============================================================================
# ASSIGNMENT
# =============================================================================

class AssignmentRejected(WorkflowError):
    """Officer failed assignment validation."""
    code = "ASSIGNMENT_REJECTED"


class RoleMismatch(AssignmentRejected):
    code = "ROLE_MISMATCH"


class WorkloadExceeded(AssignmentRejected):
    code = "WORKLOAD_EXCEEDED"


class NoEligibleReviewer(NotFound):
    """Nobody can take the case right now. Non-fatal for status transitions."""
    code = "NO_ELIGIBLE_REVIEWER"


# =============================================================================
# SIGNING GATEWAY
# =============================================================================

class KeyNotConfigured(WorkflowError):
    """Officer has no HSM key label."""
    code = "KEY_NOT_CONFIGURED"


class GatewayError(WorkflowError):
    """HSM call failed. raw_response holds the provider body for diagnostics."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, raw_response: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.raw_response = raw_response


class SigningFailed(GatewayError):
    """HSM rejected or failed the sign call; the attempt is now FAILED."""
    code = "SIGNING_FAILED"
