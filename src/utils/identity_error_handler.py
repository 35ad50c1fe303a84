"""
Error handling and recovery for the identity subsystem.

Maps collaborator and storage failures onto recovery strategies:
- delivery failures degrade gracefully and are surfaced to operators
- authorization oracle failures fall back to the fail-closed default
- corrective mutation failures escalate to an operator
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.exceptions import (
    AuthorizationOracleError,
    BusinessLogicError,
    CorrectiveMutationError,
    DatabaseError,
    DeliveryError,
    IdentityError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class IdentityErrorCategory(str, Enum):
    """Error categories of the identity subsystem."""

    INTERVIEW_DELIVERY = "interview_delivery"
    IDENTIFIER_ALLOCATION = "identifier_allocation"
    AUTHORIZATION_CHECK = "authorization_check"
    CORRECTIVE_MUTATION = "corrective_mutation"
    DATABASE_OPERATION = "database_operation"
    VALIDATION = "validation"


class RecoveryStrategy(str, Enum):
    """Recovery strategies for different error scenarios."""

    RETRY_WITH_BACKOFF = "retry_with_backoff"
    FALLBACK_TO_DEFAULT = "fallback_to_default"
    PROMPT_USER_RETRY = "prompt_user_retry"
    ESCALATE_TO_ADMIN = "escalate_to_admin"
    GRACEFUL_DEGRADATION = "graceful_degradation"


@dataclass
class ErrorContext:
    """Context information for error handling."""

    participant_id: Optional[str] = None
    group_id: Optional[str] = None
    session_id: Optional[str] = None
    operation: Optional[str] = None
    component: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_log_context(self) -> Dict[str, Any]:
        data = {
            "participant_id": self.participant_id,
            "group_id": self.group_id,
            "session_id": self.session_id,
            "operation": self.operation,
            "component": self.component,
        }
        data.update(self.metadata)
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class RecoveryResult:
    """Result of an error recovery decision."""

    success: bool
    strategy_used: RecoveryStrategy
    result_data: Any = None
    error_message: Optional[str] = None
    fallback_used: bool = False
    operator_action_required: bool = False
    recovery_suggestions: List[str] = field(default_factory=list)


class IdentityErrorHandler:
    """Centralized error handler for interview and protection flows."""

    def __init__(self):
        self.recovery_stats: Dict[str, Dict[str, int]] = {}

    def handle_delivery_error(self, error: Exception, context: ErrorContext) -> RecoveryResult:
        """The participant could not be reached; the session is kept."""
        logger.warning(
            f"Delivery to participant {context.participant_id} failed: {error}"
        )
        result = RecoveryResult(
            success=False,
            strategy_used=RecoveryStrategy.GRACEFUL_DEGRADATION,
            error_message="Participant unreachable; interview kept for manual resumption.",
            fallback_used=True,
            operator_action_required=True,
            recovery_suggestions=[
                "Ask the participant to open direct messages",
                "Force-start the interview once the channel is available",
            ],
        )
        self._update_recovery_stats(IdentityErrorCategory.INTERVIEW_DELIVERY, result.strategy_used)
        return result

    def handle_oracle_error(self, error: Exception, context: ErrorContext) -> RecoveryResult:
        """No attribution could be obtained; treat the change as unauthorized."""
        logger.warning(
            f"Authorization check for participant {context.participant_id} failed, "
            f"treating as unauthorized: {error}"
        )
        result = RecoveryResult(
            success=False,
            strategy_used=RecoveryStrategy.FALLBACK_TO_DEFAULT,
            result_data=None,
            error_message="Authorization unavailable; change treated as unauthorized.",
            fallback_used=True,
        )
        self._update_recovery_stats(IdentityErrorCategory.AUTHORIZATION_CHECK, result.strategy_used)
        return result

    def handle_corrective_mutation_error(
        self, error: Exception, context: ErrorContext
    ) -> RecoveryResult:
        """Reverting failed; a human must intervene."""
        logger.critical(
            f"Corrective mutation failed for participant {context.participant_id} "
            f"in group {context.group_id}: {error}"
        )
        result = RecoveryResult(
            success=False,
            strategy_used=RecoveryStrategy.ESCALATE_TO_ADMIN,
            error_message="Protected identifier could not be restored.",
            operator_action_required=True,
            recovery_suggestions=[
                "Check that the enforcing account outranks the participant",
                "Restore the identifier manually",
            ],
        )
        self._update_recovery_stats(IdentityErrorCategory.CORRECTIVE_MUTATION, result.strategy_used)
        return result

    def handle_database_error(self, error: Exception, context: ErrorContext) -> RecoveryResult:
        """Handle database-specific errors with appropriate recovery strategies."""
        error_msg = str(error).lower()
        operation = context.operation or "database operation"

        if "connection" in error_msg or "timeout" in error_msg:
            result = RecoveryResult(
                success=False,
                strategy_used=RecoveryStrategy.RETRY_WITH_BACKOFF,
                error_message=f"Database connection issue during {operation}.",
                recovery_suggestions=["Retry once the database is reachable"],
            )
        elif "constraint" in error_msg or "unique" in error_msg:
            result = RecoveryResult(
                success=False,
                strategy_used=RecoveryStrategy.PROMPT_USER_RETRY,
                error_message=f"Data conflict during {operation}.",
                recovery_suggestions=["Repeat the request; the conflicting value is reserved"],
            )
        else:
            result = RecoveryResult(
                success=False,
                strategy_used=RecoveryStrategy.ESCALATE_TO_ADMIN,
                error_message=f"Database error during {operation}.",
                operator_action_required=True,
            )
        self._update_recovery_stats(IdentityErrorCategory.DATABASE_OPERATION, result.strategy_used)
        return result

    def handle(self, category: IdentityErrorCategory, error: Exception, context: ErrorContext) -> RecoveryResult:
        """Route an error by its type; the category decides for errors of unknown type."""
        if isinstance(error, DeliveryError):
            return self.handle_delivery_error(error, context)
        if isinstance(error, AuthorizationOracleError):
            return self.handle_oracle_error(error, context)
        if isinstance(error, CorrectiveMutationError):
            return self.handle_corrective_mutation_error(error, context)
        if isinstance(error, DatabaseError):
            return self.handle_database_error(error, context)
        if isinstance(error, ValidationError):
            result = RecoveryResult(
                success=False,
                strategy_used=RecoveryStrategy.PROMPT_USER_RETRY,
                error_message=error.user_message,
            )
            self._update_recovery_stats(category, result.strategy_used)
            return result

        if category == IdentityErrorCategory.INTERVIEW_DELIVERY:
            return self.handle_delivery_error(error, context)
        if category == IdentityErrorCategory.AUTHORIZATION_CHECK:
            return self.handle_oracle_error(error, context)
        if category == IdentityErrorCategory.CORRECTIVE_MUTATION:
            return self.handle_corrective_mutation_error(error, context)
        if category == IdentityErrorCategory.DATABASE_OPERATION:
            return self.handle_database_error(error, context)

        result = RecoveryResult(
            success=False,
            strategy_used=RecoveryStrategy.ESCALATE_TO_ADMIN,
            error_message="An unexpected error occurred.",
            operator_action_required=True,
        )
        self._update_recovery_stats(category, result.strategy_used)
        return result

    @contextmanager
    def error_boundary(self, category: IdentityErrorCategory, context: ErrorContext):
        """
        Attach a recovery decision to any failure and re-raise it.

        Business rule rejections pass through untouched. Other exceptions are
        wrapped, as DatabaseError for the database category.
        """
        try:
            yield
        except BusinessLogicError:
            raise
        except IdentityError as error:
            logger.error(f"Error in {category.value}: {error}", exc_info=True)
            error.details["recovery_result"] = self.handle(category, error, context)
            raise
        except Exception as error:
            logger.error(f"Error in {category.value}: {error}", exc_info=True)
            recovery_result = self.handle(category, error, context)
            wrapper = DatabaseError if category == IdentityErrorCategory.DATABASE_OPERATION else IdentityError
            raise wrapper(
                str(error),
                user_message=recovery_result.error_message,
                details={"recovery_result": recovery_result},
                cause=error,
            ) from error

    def _update_recovery_stats(self, category: IdentityErrorCategory, strategy: RecoveryStrategy):
        """Update recovery statistics for monitoring."""
        by_strategy = self.recovery_stats.setdefault(category.value, {})
        by_strategy[strategy.value] = by_strategy.get(strategy.value, 0) + 1

    def get_recovery_stats(self) -> Dict[str, Any]:
        """Get recovery statistics for monitoring and analysis."""
        return {"recovery_stats": {k: dict(v) for k, v in self.recovery_stats.items()}}
