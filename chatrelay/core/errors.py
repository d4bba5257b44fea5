"""Relay error taxonomy.

Every error carries the HTTP status it maps to and an optional dict of
machine-readable fields (remaining balance, token limit, required tier...)
that the client renders into an upgrade / login / new-chat prompt.
"""

from typing import Any


class RelayError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationError(RelayError):
    """Malformed chat turn."""

    status_code = 400
    code = "invalid_request"


class IdentityError(RelayError):
    """Bearer token or guest session could not be verified."""

    status_code = 401
    code = "invalid_identity"


class QuotaError(RelayError):
    """Credit balance too low to start an exchange."""

    status_code = 402
    code = "quota_exceeded"


class AuthorizationError(RelayError):
    """Model not permitted for the caller's tier (or for guests)."""

    status_code = 403
    code = "model_not_permitted"


class ConversationTooLongError(RelayError):
    """Conversation token budget exhausted; the caller must start a new chat."""

    status_code = 413
    code = "conversation_too_long"


class UpstreamError(RelayError):
    """Completion API failed, timed out or dropped the stream."""

    status_code = 502
    code = "upstream_error"


class PersistenceError(RelayError):
    """Store or ledger write failed after a completed exchange."""

    status_code = 500
    code = "persistence_error"
