"""
Custom exception hierarchy for structured error handling.

WHY: Every failure the core can produce maps to one class here, so callers
(the webhook ingress, operator tooling) can tell a malformed event from a
missing target, an illegal lifecycle change, a breached limit, or a lost
concurrency race without parsing messages.

IMPORTANT: NEVER raise the base Exception class from domain code.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    All custom exceptions inherit from this class and carry an HTTP status
    code plus free-form context for logs.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation & Input Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    For billing events this means the envelope or payload is malformed; the
    event is held for manual replay instead of being dropped.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class NotFoundError(ResourceNotFoundError):
    """
    Raised when an update-type billing event has no target snapshot,
    or an organization lookup misses.

    Logged and counted; escalated after repeated occurrence. Not fatal
    for the webhook caller.
    """

    default_message = "Target not found"


class OrganizationNotFoundError(NotFoundError):
    """Raised when an organization doesn't exist."""

    default_message = "Organization not found"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when a business rule is violated.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when an invalid state transition is attempted.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


class InvalidTransition(InvalidStateTransitionError):
    """
    Raised when a lifecycle operation is called from a status outside its
    allowed source set. The organization is left unchanged.
    """

    default_message = "Lifecycle transition not allowed from current status"


class LimitExceeded(BusinessRuleViolation):
    """
    Raised when a usage increment would breach the entitlement limit.
    No counter is changed.
    """

    default_message = "Plan limit exceeded"


# ============================================================================
# Concurrency Exceptions
# ============================================================================


class ConcurrencyConflict(AppException):
    """
    Raised when an optimistic write lost a race with a concurrent writer.

    The losing unit of work has been rolled back; the caller retries.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Concurrent modification detected"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class NotificationDeliveryError(ExternalServiceError):
    """
    Raised by a notification channel when delivery fails.

    Notifications are best-effort: the dispatcher logs and swallows this,
    it never reaches the transition that requested the notification.
    """

    default_message = "Notification delivery failed"


class WebhookSignatureError(AppException):
    """
    Raised when a provider webhook fails signature verification.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"


# ============================================================================
# Configuration Exceptions
# ============================================================================


class ConfigurationError(AppException):
    """
    Raised when a required setting is missing at request time.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Service is not configured"
