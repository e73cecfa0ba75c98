# nima/core/errors.py
"""Domain errors for the credit and look-generation pipeline.

Every error carries a machine-readable ``code`` (what result-style endpoints put
in ``{"success": false, "error": ...}``) and the HTTP status the exception
handler in ``nima.server`` maps it to.
"""

from typing import Optional


class NimaError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.code.replace("_", " ").capitalize()
        super().__init__(self.detail)


class AuthenticationRequired(NimaError):
    code = "authentication_required"
    status_code = 401


class NotFound(NimaError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, detail: Optional[str] = None):
        self.entity = entity
        super().__init__(detail or f"{entity.capitalize()} not found")


class Unauthorized(NimaError):
    code = "unauthorized"
    status_code = 403


class InsufficientCredits(NimaError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, remaining: int):
        self.remaining = remaining
        super().__init__(f"Insufficient credits ({remaining} remaining)")


class RateLimited(NimaError):
    code = "rate_limited"
    status_code = 429


class ValidationError(NimaError):
    code = "validation_error"
    status_code = 422

    def __init__(self, field: str, detail: Optional[str] = None):
        self.field = field
        super().__init__(detail or f"Invalid {field}")


class ItemsUnavailable(NimaError):
    """One or more requested catalog items are missing or inactive."""
    code = "items_unavailable"
    status_code = 422


class InvalidTransition(NimaError):
    code = "invalid_transition"
    status_code = 409


class ProviderFailure(NimaError):
    """Image provider error. Recorded on the look, never retried automatically."""
    code = "provider_failure"
    status_code = 502


class DuplicateWebhook(NimaError):
    """A webhook for an already-completed purchase. Absorbed, never surfaced."""
    code = "duplicate_webhook"
    status_code = 200


class LedgerConflict(NimaError):
    code = "ledger_conflict"
    status_code = 503


def result_code(exc: NimaError) -> str:
    """Error code for `{"success": false, "error": ...}` results."""
    if isinstance(exc, ValidationError):
        return f"invalid_{exc.field}"
    return exc.code
