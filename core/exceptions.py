"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy shared by every replication
component.

- Distinguishes "not allowed" from "does not exist"
- Carries a machine-readable reason code for channel replies
- Classifies transport failures as transient (retryable)
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
SyncException (base)
├── ConfigurationError
├── ValidationError
├── InvalidIdentifierError
├── NotFoundError
│   ├── TableNotFoundError
│   ├── ConnectionNotFoundError
│   ├── TransferNotFoundError
│   └── InvalidSessionCodeError
├── PolicyDeniedError
│   └── SessionAlreadyUsedError
├── DuplicateConnectionError
├── InvalidTransitionError
│   └── ApprovalExpiredError
├── TransportError
├── RecordImportError
└── PersistenceError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Caller can handle and continue."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class SyncException(Exception):
    """
    Base exception for all replication errors.

    All exceptions carry:
    - reason: short code sent to the remote peer
    - severity: for alerting
    - classification: for retry decisions
    - context: for debugging
    """

    default_reason: str = "error"
    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.reason = reason or self.default_reason
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_retryable(self) -> bool:
        """Check if a retry may succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "reason": self.reason,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION / VALIDATION
# ============================================================

class ConfigurationError(SyncException):
    """Error in configuration."""

    default_reason = "configuration_error"
    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)


class ValidationError(SyncException):
    """Attributes rejected before persistence."""

    default_reason = "invalid_attributes"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None, **kwargs):
        context = kwargs.pop("context", {})
        self.errors = errors or {}
        context["errors"] = self.errors
        super().__init__(message, context=context, **kwargs)


class InvalidIdentifierError(SyncException):
    """Table or column name failed the safe-identifier check."""

    default_reason = "invalid_identifier"
    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, identifier: Any):
        self.identifier = identifier
        super().__init__(
            f"Invalid identifier: {str(identifier)[:64]!r}",
            context={"identifier": str(identifier)[:64]},
        )


# ============================================================
# NOT FOUND
# ============================================================

class NotFoundError(SyncException):
    """Requested object does not exist."""

    default_reason = "not_found"


class TableNotFoundError(NotFoundError):
    """Table absent on this node."""

    default_reason = "table_not_found"

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table not found: {table}", context={"table": table})


class ConnectionNotFoundError(NotFoundError):
    default_reason = "connection_not_found"


class TransferNotFoundError(NotFoundError):
    default_reason = "transfer_not_found"


class InvalidSessionCodeError(NotFoundError):
    """Pairing code unknown or its owner is gone."""

    default_reason = "invalid_code"


# ============================================================
# POLICY
# ============================================================

class PolicyDeniedError(SyncException):
    """
    Request refused by connection policy.

    The reason names the rule that refused it, e.g.
    table_not_allowed, ip_not_allowed, download_limit_reached.
    """

    default_reason = "policy_denied"

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Denied: {reason}", reason=reason, **kwargs)


class SessionAlreadyUsedError(PolicyDeniedError):
    """Pairing code was already consumed."""

    def __init__(self, code: str):
        super().__init__("already_used", f"Session code already used: {code}")


class DuplicateConnectionError(SyncException):
    """A connection for this remote site and direction already exists."""

    default_reason = "duplicate_connection"


# ============================================================
# STATE MACHINE
# ============================================================

class InvalidTransitionError(SyncException):
    """Operation called from a state that does not allow it."""

    default_reason = "invalid_transition"

    def __init__(
        self,
        reason: str,
        from_state: Optional[str] = None,
        message: Optional[str] = None,
        **kwargs,
    ):
        self.from_state = from_state
        context = kwargs.pop("context", {})
        if from_state:
            context["from_state"] = from_state
        super().__init__(
            message or f"{reason} (current status: {from_state})",
            reason=reason,
            context=context,
            **kwargs,
        )


class ApprovalExpiredError(InvalidTransitionError):
    """Approval window elapsed before a decision was made."""

    def __init__(self, transfer_id: Any):
        super().__init__(
            "approval_expired",
            from_state="pending_approval",
            message=f"Approval window expired for transfer {transfer_id}",
        )


# ============================================================
# TRANSPORT / IMPORT / PERSISTENCE
# ============================================================

class TransportError(SyncException):
    """Channel timeout or drop. Retry the page or abort."""

    default_reason = "transport_error"
    default_classification = ErrorClassification.TRANSIENT


class RecordImportError(SyncException):
    """One record could not be written."""

    default_reason = "record_import_failed"
    default_severity = Severity.LOW

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None, **kwargs):
        self.record = record
        super().__init__(message, **kwargs)


class PersistenceError(SyncException):
    """Database operation failed."""

    default_reason = "persistence_error"
    default_severity = Severity.HIGH
