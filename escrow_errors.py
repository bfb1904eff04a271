"""
Error taxonomy for the escrow lifecycle engine.

Every failure of a transition is reported to the caller as one of these
exceptions. The API layer maps them onto HTTP responses, so the ``code``
attribute is stable and safe to show to clients.
"""


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    code = "escrow_error"


class NotFoundError(EscrowError):
    """Raised when a transaction id is unknown."""
    code = "not_found"


class ForbiddenError(EscrowError):
    """Raised when the caller lacks the role or relationship for a transition."""
    code = "forbidden"


class InvalidStateError(EscrowError):
    """Raised when a transition's precondition does not hold."""
    code = "invalid_state"


class StaleAssessmentError(InvalidStateError):
    """Raised when an assessment result no longer matches the transaction."""
    code = "stale_assessment"


class ValidationError(EscrowError):
    """Raised when transaction input is malformed."""
    code = "validation_failed"


class AssessmentUnavailableError(EscrowError):
    """Raised when the risk assessor fails or times out."""
    code = "assessment_unavailable"
