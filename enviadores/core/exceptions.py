"""
Enviadores Exception Hierarchy

Every failure in the finalization workflow is raised as one of these.
Components translate raw httpx errors at their own boundary, so callers
only ever handle this taxonomy.

Exception Hierarchy:
    EnviadoresError
    ├── ValidationError
    ├── TransientError
    │   ├── RateQueryError
    │   └── RetrievalExhaustedError
    ├── AuthError
    ├── RateLimitError
    ├── ConsistencyError
    ├── CommitError
    │   └── CommitOutcomeUnknownError
    ├── IncompleteFulfillmentError
    └── InvalidTransitionError
"""
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EnviadoresError(Exception):
    """
    Base exception for all Enviadores errors.

    Attributes:
        message: Human-readable error description (safe to show an operator)
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging
    """

    default_code: str = "ENVIADORES_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(EnviadoresError):
    """
    Structured, field-addressable rejection from an upstream API.

    field_errors maps a dotted field path (``address_to.email``) to its
    message so the caller can fix the exact field and resubmit.
    """
    default_code = "VALIDATION_FAILED"

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None, **kwargs):
        self.field_errors = dict(field_errors or {})
        details = kwargs.pop("details", {})
        details["field_errors"] = self.field_errors
        super().__init__(message, details=details, **kwargs)

    def has_error(self, path: str) -> bool:
        return path in self.field_errors


class TransientError(EnviadoresError):
    """Network failure, timeout or 5xx. Retry-eligible per component policy."""
    default_code = "TRANSIENT_FAILURE"


class RateQueryError(TransientError):
    """Rate query failed. status_code is None when no response was received."""
    default_code = "RATE_QUERY_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class RetrievalExhaustedError(TransientError):
    """Label download gave up after the attempt cap. Not fatal to a session."""
    default_code = "RETRIEVAL_EXHAUSTED"

    def __init__(self, message: str, remote_url: str, attempts: int, **kwargs):
        self.remote_url = remote_url
        self.attempts = attempts
        details = kwargs.pop("details", {})
        details.update({"remote_url": remote_url, "attempts": attempts})
        super().__init__(message, details=details, **kwargs)


class AuthError(EnviadoresError):
    """Authentication failed even after one silent re-login."""
    default_code = "AUTH_FAILED"


class RateLimitError(EnviadoresError):
    """Upstream kept answering 429 after the backoff budget was spent."""
    default_code = "RATE_LIMITED"

    def __init__(self, message: str = "Service busy, please try again shortly", attempts: int = 0, **kwargs):
        self.attempts = attempts
        details = kwargs.pop("details", {})
        details["attempts"] = attempts
        super().__init__(message, details=details, **kwargs)


class ConsistencyError(EnviadoresError):
    """
    Quote postal codes no longer match the bound customer/destination.

    Never retried automatically; the operator must re-quote.
    """
    default_code = "ZIP_MISMATCH"

    def __init__(self, message: str, mismatches: Optional[List[Any]] = None, **kwargs):
        self.mismatches = list(mismatches or [])
        details = kwargs.pop("details", {})
        details["mismatches"] = [
            m.to_dict() if hasattr(m, "to_dict") else m for m in self.mismatches
        ]
        details["action"] = "requote"
        super().__init__(message, details=details, **kwargs)


class CommitError(EnviadoresError):
    """Backend rejected the shipment. Nothing was persisted."""
    default_code = "COMMIT_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)


class CommitOutcomeUnknownError(CommitError):
    """
    The request may have reached the backend but no answer came back.

    The shipment might exist; the operator must check history before retrying.
    """
    default_code = "COMMIT_OUTCOME_UNKNOWN"


class IncompleteFulfillmentError(EnviadoresError):
    """Commit requested before the chosen fulfillment path is complete."""
    default_code = "FULFILLMENT_INCOMPLETE"

    def __init__(self, message: str, missing: Optional[List[str]] = None, **kwargs):
        self.missing = list(missing or [])
        details = kwargs.pop("details", {})
        details["missing"] = self.missing
        super().__init__(message, details=details, **kwargs)


class InvalidTransitionError(EnviadoresError):
    """Operator action not allowed from the session's current status."""
    default_code = "INVALID_TRANSITION"

    def __init__(self, current: str, action: str, **kwargs):
        self.current = current
        self.action = action
        details = kwargs.pop("details", {})
        details.update({"current": current, "action": action})
        message = kwargs.pop("message", f"Cannot {action} while session is {current}")
        super().__init__(message, details=details, **kwargs)
