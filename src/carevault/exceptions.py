"""
Error Taxonomy

Two tiers:
- Internal: every error carries a `detail` string that may hold diagnostics
  (driver messages, hashes of identifiers, ...). It is logged, never returned.
- External: `to_public()` yields the sanitized view (code + message) that
  callers and HTTP clients see.

Public kinds and their HTTP status are listed in STATUS_CODES. Anything that
is not a CareVaultError is reported as Internal; there is no passthrough.
"""

from typing import Any, Dict, List, Optional


class CareVaultError(Exception):
    """Base class for all errors surfaced by the auth core."""

    code = "internal"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None,
                 detail: Optional[str] = None,
                 fields: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.detail = detail
        self.fields = list(fields) if fields else []
        super().__init__(self.message)

    def to_public(self) -> Dict[str, Any]:
        """Sanitized representation; `detail` is deliberately excluded."""
        public: Dict[str, Any] = {'code': self.code, 'message': self.message}
        if self.fields:
            public['fields'] = self.fields
        return public

    @property
    def status_code(self) -> int:
        return status_for(self)


# ============================================================================
# Public kinds
# ============================================================================

class ValidationFailed(CareVaultError):
    code = "validation_failed"
    default_message = "Request validation failed"


class AlreadyExists(CareVaultError):
    code = "already_exists"
    default_message = "Record already exists"


class InvalidCredentials(CareVaultError):
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class NotFound(CareVaultError):
    code = "not_found"
    default_message = "Not found"


class Forbidden(CareVaultError):
    code = "forbidden"
    default_message = "Access denied"


class RateLimited(CareVaultError):
    code = "rate_limited"
    default_message = "Too many attempts"


class Expired(CareVaultError):
    code = "expired"
    default_message = "Expired"


class Upstream(CareVaultError):
    code = "upstream"
    default_message = "Service temporarily unavailable"


class Internal(CareVaultError):
    code = "internal"
    default_message = "Internal server error"


# ============================================================================
# Component errors (mapped onto the public kinds by inheritance)
# ============================================================================

class InvalidInput(ValidationFailed):
    """Raised by the credential hasher for unusable plaintext."""


class CorruptCredential(Internal):
    """A stored digest could not be parsed. Distinct from a wrong password."""


class CredentialNotSet(Internal):
    """The principal exists but has no stored password hash."""


class TokenExpired(Expired):
    default_message = "Session expired, please log in again"


class TokenMalformed(InvalidCredentials):
    default_message = "Invalid token"


# ============================================================================
# Collaborator errors (never surfaced as-is; translated by the facade)
# ============================================================================

class StoreError(Exception):
    """Record store failure (connection loss, driver error, ...)."""


class UniquenessError(StoreError):
    """An insert or update violated a unique constraint."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"duplicate value for {field}")


class RecordNotFound(StoreError):
    """An update targeted a record that does not exist."""


class NotifierError(Exception):
    """Notification delivery failed."""


STATUS_CODES = {
    ValidationFailed: 400,
    InvalidCredentials: 401,
    Expired: 401,
    Forbidden: 403,
    NotFound: 404,
    AlreadyExists: 409,
    RateLimited: 429,
    Upstream: 500,
    Internal: 500,
}


def status_for(error: BaseException) -> int:
    """HTTP status for an error; unknown exceptions map to 500."""
    for kind in type(error).__mro__:
        if kind in STATUS_CODES:
            return STATUS_CODES[kind]
    return 500


def to_public_error(error: BaseException) -> CareVaultError:
    """Return `error` if it is a public kind, otherwise a generic Internal."""
    if isinstance(error, CareVaultError):
        return error
    return Internal(detail=f"{type(error).__name__}: {error}")
