"""
Custom exception hierarchy for the designation protocol.
Provides structured error handling with user-friendly messages and proper categorization.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    BUSINESS_LOGIC = "business_logic"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    SYSTEM = "system"


class IdentityError(Exception):
    """
    Base error for the subsystem.

    Subclasses pass their defaults for category and severity; explicit keyword
    arguments from the caller win over the subclass defaults.
    """

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or "An unexpected error occurred."
        self.category = category or ErrorCategory.SYSTEM
        self.severity = severity or ErrorSeverity.MEDIUM
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        return self.message

    @property
    def error_code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


def _defaults(kwargs: Dict[str, Any], **defaults: Any) -> Dict[str, Any]:
    """Merge subclass defaults under caller-provided kwargs."""
    merged = dict(defaults)
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    return merged


# Validation Errors
class ValidationError(IdentityError):
    """Base class for validation errors."""

    def __init__(self, message: str, field: str | None = None, **kwargs):
        details = {"field": field} if field else {}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            message,
            details=details,
            **_defaults(
                kwargs,
                user_message="Invalid input provided. Please check your data and try again.",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.LOW,
            ),
        )


class InvalidInputError(ValidationError):
    """Invalid input value."""

    def __init__(self, field: str, value: Any, reason: str, **kwargs):
        super().__init__(
            f"Invalid value for field '{field}': {reason}",
            field=field,
            user_message=f"Invalid {field}: {reason}",
            **kwargs,
        )
        self.details.update({"value": str(value), "reason": reason})


# Business Logic Errors
class BusinessLogicError(IdentityError):
    """Base class for business logic errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            **_defaults(
                kwargs, category=ErrorCategory.BUSINESS_LOGIC, severity=ErrorSeverity.MEDIUM
            ),
        )


class InterviewError(BusinessLogicError):
    """Interview-related errors."""


class DuplicateSessionError(InterviewError):
    """An open interview session already exists for the participant."""

    def __init__(self, participant_id: str, group_id: str, session_id: Any = None, **kwargs):
        super().__init__(
            f"Participant {participant_id} already has an open interview in group {group_id}",
            user_message="An assessment is already in progress.",
            details={
                "participant_id": participant_id,
                "group_id": group_id,
                "session_id": str(session_id) if session_id else None,
            },
            severity=ErrorSeverity.LOW,
            **kwargs,
        )
        self.participant_id = participant_id
        self.group_id = group_id
        self.session_id = session_id


class DuplicateAnswerError(InterviewError):
    """The question was already answered in this session."""

    def __init__(self, question_index: int, session_id: Any = None, **kwargs):
        super().__init__(
            f"Question {question_index} has already been answered",
            user_message="You have already answered this question.",
            details={
                "question_index": question_index,
                "session_id": str(session_id) if session_id else None,
            },
            severity=ErrorSeverity.LOW,
            **kwargs,
        )
        self.question_index = question_index


class InvalidTransitionError(InterviewError):
    """The event is not valid for the session's current stage."""

    def __init__(self, stage: str, action: str, **kwargs):
        super().__init__(
            f"Cannot {action} while session is in stage '{stage}'",
            user_message="This step is not available right now.",
            details={"stage": stage, "action": action},
            severity=ErrorSeverity.LOW,
            **kwargs,
        )
        self.stage = stage
        self.action = action


class SessionNotFoundError(InterviewError):
    """No interview session exists for the participant."""

    def __init__(self, participant_id: str, group_id: str, **kwargs):
        super().__init__(
            f"No open interview session for participant {participant_id} in group {group_id}",
            user_message="No assessment is in progress.",
            details={"participant_id": participant_id, "group_id": group_id},
            severity=ErrorSeverity.LOW,
            **kwargs,
        )


class IdentifierError(BusinessLogicError):
    """Identifier allocation errors."""


class IdentifierConflictError(IdentifierError):
    """The identifier is already displayed or reserved."""

    def __init__(self, identifier: str, group_id: str | None = None, **kwargs):
        super().__init__(
            f"Identifier '{identifier}' is already in use",
            user_message="That designation is already taken. Please choose another.",
            details={"identifier": identifier, "group_id": group_id},
            **kwargs,
        )
        self.identifier = identifier


class IdentifierSpaceExhaustedError(IdentifierError):
    """No identifier could be reserved, including fallback values."""

    def __init__(self, attempts: int, **kwargs):
        super().__init__(
            f"Unable to reserve an identifier after {attempts} attempts",
            details={"attempts": attempts},
            severity=ErrorSeverity.CRITICAL,
            **kwargs,
        )


# Database Errors
class DatabaseError(IdentityError):
    """Base class for database errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            **_defaults(
                kwargs,
                user_message="A storage error occurred. Please try again later.",
                category=ErrorCategory.DATABASE,
                severity=ErrorSeverity.HIGH,
            ),
        )


# External Service Errors
class ExternalServiceError(IdentityError):
    """Base class for collaborator failures."""

    def __init__(self, service_name: str, message: str, **kwargs):
        details = {"service": service_name}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            f"{service_name}: {message}",
            details=details,
            **_defaults(
                kwargs,
                user_message="An external service is unavailable.",
                category=ErrorCategory.EXTERNAL_SERVICE,
                severity=ErrorSeverity.HIGH,
            ),
        )
        self.service_name = service_name


class DeliveryError(ExternalServiceError):
    """The outbound channel to a participant could not be opened."""

    def __init__(self, participant_id: str, message: str = "delivery failed", **kwargs):
        super().__init__(
            "transport",
            message,
            details={"participant_id": participant_id},
            severity=ErrorSeverity.MEDIUM,
            **kwargs,
        )


class AuthorizationOracleError(ExternalServiceError):
    """The authorization oracle failed or timed out."""

    def __init__(self, message: str, timeout_seconds: float | None = None, **kwargs):
        super().__init__(
            "authorization_oracle",
            message,
            details={"timeout_seconds": timeout_seconds},
            category=ErrorCategory.AUTHORIZATION,
            **kwargs,
        )


class CorrectiveMutationError(ExternalServiceError):
    """Reverting a protected identifier failed."""

    def __init__(self, participant_id: str, protected_value: str, reason: str, **kwargs):
        super().__init__(
            "transport",
            f"could not restore '{protected_value}' for {participant_id}: {reason}",
            details={"participant_id": participant_id, "protected_value": protected_value},
            severity=ErrorSeverity.CRITICAL,
            **kwargs,
        )


# System Errors
class ConfigurationError(IdentityError):
    """Configuration setting is missing or invalid."""

    def __init__(self, setting: str, **kwargs):
        super().__init__(
            f"Configuration error: {setting}",
            details={"setting": setting},
            **_defaults(kwargs, category=ErrorCategory.SYSTEM, severity=ErrorSeverity.HIGH),
        )
