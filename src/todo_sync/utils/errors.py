"""
Error handling framework for the todo-sync core.

This module provides:
- Hierarchical exception classes with stable error codes
- Error context preservation
- Structured error responses for the transport layer
- An error context manager that wraps unexpected failures
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("todo-sync.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    SESSION = "session"
    DELIVERY = "delivery"
    DATABASE = "database"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    item_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SyncError(Exception):
    """Base exception for all todo-sync errors."""

    code: str = "SYNC_ERROR"
    default_message: str = "An error occurred in the sync core"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **details
    ):
        """Initialize sync error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "details": self.details,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "user_id": self.context.user_id,
                    "session_id": self.context.session_id,
                    "item_id": self.context.item_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata,
                }
            }
        }


# Lifecycle errors

class InvalidTransition(SyncError):
    """Requested status is not one hop away from the current status."""
    code = "INVALID_TRANSITION"
    default_message = "Transition is not allowed from the current status"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, from_status: str, to_status: str, **kwargs):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition from '{from_status}' to '{to_status}'",
            from_status=from_status,
            to_status=to_status,
            **kwargs
        )


class StaleRequest(SyncError):
    """Request timestamp predates the entry into the current status."""
    code = "STALE_REQUEST"
    default_message = "Request is older than the current item state"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.WARNING

    def __init__(self, requested_at: datetime, current_entered_at: datetime, **kwargs):
        self.requested_at = requested_at
        self.current_entered_at = current_entered_at
        super().__init__(
            f"Request at {requested_at.isoformat()} is older than "
            f"current status entry at {current_entered_at.isoformat()}",
            requested_at=requested_at.isoformat(),
            current_entered_at=current_entered_at.isoformat(),
            **kwargs
        )

    def get_suggestions(self) -> List[str]:
        return ["Re-fetch the item; a newer change has already been applied"]


class VersionConflict(SyncError):
    """Caller's expected version does not match the stored version."""
    code = "VERSION_CONFLICT"
    default_message = "Item was modified concurrently"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.WARNING

    def __init__(self, expected_version: int, actual_version: int, **kwargs):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Expected version {expected_version}, found {actual_version}",
            expected_version=expected_version,
            actual_version=actual_version,
            **kwargs
        )

    def get_suggestions(self) -> List[str]:
        return ["Re-fetch the current item and retry the transition"]


class ItemNotFound(SyncError):
    """Item does not exist or belongs to another user."""
    code = "ITEM_NOT_FOUND"
    default_message = "Item not found"
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.WARNING


class InvalidRequest(SyncError):
    """Client message is missing fields or has the wrong shape."""
    code = "INVALID_REQUEST"
    default_message = "Malformed request"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


# Session errors

class DuplicateSession(SyncError):
    """Session identifier is already in use."""
    code = "DUPLICATE_SESSION"
    default_message = "Session identifier already registered"
    category = ErrorCategory.SESSION
    severity = ErrorSeverity.WARNING

    def get_suggestions(self) -> List[str]:
        return ["Generate a fresh session identifier and reconnect"]


class SessionNotFound(SyncError):
    """Session identifier is unknown."""
    code = "SESSION_NOT_FOUND"
    default_message = "Session not found"
    category = ErrorCategory.SESSION
    severity = ErrorSeverity.WARNING


class EventNotFound(SyncError):
    """Event id has not been assigned in the user's log."""
    code = "EVENT_NOT_FOUND"
    default_message = "Event not found"
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.WARNING


class DeliveryFailure(SyncError):
    """Pushing an event over a session's connection failed."""
    code = "DELIVERY_FAILURE"
    default_message = "Event delivery failed"
    category = ErrorCategory.DELIVERY
    severity = ErrorSeverity.INFO
    is_retryable = True


class ResyncRequired(SyncError):
    """Incremental replay is impossible; client must refetch full state."""
    code = "RESYNC_REQUIRED"
    default_message = "Full state resynchronization required"
    category = ErrorCategory.SESSION
    severity = ErrorSeverity.INFO

    def get_suggestions(self) -> List[str]:
        return ["Fetch the full current state instead of a delta"]


# Ambient errors

class DatabaseError(SyncError):
    """Database-related errors."""
    code = "DATABASE_ERROR"
    default_message = "Database error occurred"
    category = ErrorCategory.DATABASE


class AuthenticationError(SyncError):
    """Channel handshake authentication errors."""
    code = "AUTH_ERROR"
    default_message = "Authentication failed"
    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.WARNING


class ConfigurationError(SyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Ensure all required configuration values are set"
        ]


@contextmanager
def error_context(component: str, operation: str, **metadata):
    """
    Context manager that annotates sync errors and wraps unexpected ones.

    Args:
        component: Component name
        operation: Operation name
        **metadata: Additional context metadata
    """
    try:
        yield
    except SyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        context = ErrorContext(
            component=component,
            operation=operation,
            metadata=metadata
        )
        logger.error(
            "unexpected_error_in_context",
            component=component,
            operation=operation,
            error=str(e),
            exc_info=True
        )
        raise SyncError(message=str(e), context=context, cause=e) from e


__all__ = [
    'SyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'InvalidTransition',
    'StaleRequest',
    'VersionConflict',
    'ItemNotFound',
    'InvalidRequest',
    'DuplicateSession',
    'SessionNotFound',
    'EventNotFound',
    'DeliveryFailure',
    'ResyncRequired',
    'DatabaseError',
    'AuthenticationError',
    'ConfigurationError',
    'error_context',
]
