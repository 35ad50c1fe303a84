"""
Protection monitor.

Invoked for every external notification that a participant's displayed
identifier changed. Protected participants keep their value unless an
authorized actor made the change; anything else is reverted, the participant
is warned and operators get one audit event. Authorization is fail-closed:
an oracle error, a timeout or a missing attribution all count as unauthorized.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from config.config import ProtectionConfig
from src.data.models import OperatorEventSeverity
from src.exceptions import AuthorizationOracleError, CorrectiveMutationError
from src.logic.protection_ledger import ProtectionEntry, ProtectionLedger
from src.services.interfaces import (
    ActorAttribution,
    AuthorizationOracle,
    ChangeKind,
    NotificationSink,
    Transport,
)
from src.utils.identity_error_handler import (
    ErrorContext,
    IdentityErrorHandler,
)
from src.utils.logging import context_fields

logger = logging.getLogger(__name__)

LOCKED_IDENTIFIER_NOTICE = (
    "**{value}** - Your designation cannot be altered. The system has restored your identity."
)


@dataclass(frozen=True)
class IdentityChange:
    """Display identifier change reported by the transport."""

    participant_id: str
    group_id: str
    old_value: str | None
    new_value: str | None
    observed_at: datetime = field(default_factory=datetime.utcnow)


class MonitorOutcome(str, Enum):
    """What the monitor did with a change notification."""

    DISABLED = "disabled"
    UNCHANGED = "unchanged"
    UNTRACKED = "untracked"
    MATCHES_PROTECTED = "matches_protected"
    AUTHORIZED = "authorized"
    REVERTED = "reverted"
    REVERT_FAILED = "revert_failed"


@dataclass
class MonitorResult:
    outcome: MonitorOutcome
    change: IdentityChange
    protected_value: str | None = None
    actor: ActorAttribution | None = None
    warning_sent: bool = False

    @property
    def reverted(self) -> bool:
        return self.outcome == MonitorOutcome.REVERTED


class ProtectionMonitor:
    """Accept-or-revert decisions for identity change notifications."""

    def __init__(
        self,
        ledger: ProtectionLedger,
        oracle: AuthorizationOracle,
        transport: Transport,
        notifier: NotificationSink,
        protection_config: ProtectionConfig | None = None,
        error_handler: IdentityErrorHandler | None = None,
        enabled: bool = True,
        alerts_enabled: bool = True,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.transport = transport
        self.notifier = notifier
        self.config = protection_config or ProtectionConfig()
        self.error_handler = error_handler or IdentityErrorHandler()
        self.enabled = enabled
        self.alerts_enabled = alerts_enabled

        # Hung oracle calls never occupy mutation workers
        self._oracle_executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="protection-oracle"
        )
        self._mutation_executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="protection-mutation"
        )
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._global_lock = threading.Lock()

    def _lock_for(self, participant_id: str, group_id: str) -> threading.Lock:
        key = (participant_id, group_id)
        with self._global_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def handle_change(self, change: IdentityChange) -> MonitorResult:
        """
        Decide whether to accept or revert one change notification.

        Args:
            change: participant, group, old and new displayed value

        Returns:
            MonitorResult: the decision and the protected value it was based on
        """
        if not self.enabled:
            return MonitorResult(MonitorOutcome.DISABLED, change)

        if change.old_value == change.new_value:
            return MonitorResult(MonitorOutcome.UNCHANGED, change)

        with self._lock_for(change.participant_id, change.group_id):
            entry = self.ledger.get(change.participant_id, change.group_id)
            if entry is None:
                return MonitorResult(MonitorOutcome.UNTRACKED, change)

            if change.new_value == entry.protected_value:
                return MonitorResult(
                    MonitorOutcome.MATCHES_PROTECTED, change, protected_value=entry.protected_value
                )

            actor = self._attribute(change)
            if actor is not None and actor.is_authorized:
                return self._accept(change, entry, actor)

            return self._revert(change, entry, actor)

    def _attribute(self, change: IdentityChange) -> ActorAttribution | None:
        """Ask the oracle, bounded by the configured timeout; failures yield None."""
        timeout = self.config.oracle_timeout_seconds
        future = self._oracle_executor.submit(
            self.oracle.recent_actor_for,
            change.participant_id,
            change.group_id,
            ChangeKind.DISPLAY_IDENTIFIER,
            self.config.audit_window_seconds,
        )
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            error = AuthorizationOracleError(f"no answer within {timeout}s", timeout_seconds=timeout)
        except Exception as e:
            error = AuthorizationOracleError(str(e), cause=e)

        self.error_handler.handle_oracle_error(
            error,
            ErrorContext(
                participant_id=change.participant_id,
                group_id=change.group_id,
                operation="authorization_check",
                component="protection_monitor",
            ),
        )
        return None

    def _accept(
        self, change: IdentityChange, entry: ProtectionEntry, actor: ActorAttribution
    ) -> MonitorResult:
        logger.info(
            f"Authorized identifier change by {actor.actor_id} ({actor.privilege_level.value}): "
            f"{change.old_value!r} -> {change.new_value!r}",
            **context_fields(change.participant_id, change.group_id, "change_authorized"),
        )
        if self.config.refresh_baseline_on_authorized_change and change.new_value:
            self.ledger.refresh_value(change.participant_id, change.group_id, change.new_value)
        return MonitorResult(
            MonitorOutcome.AUTHORIZED, change, protected_value=entry.protected_value, actor=actor
        )

    def _apply_protected_value(self, change: IdentityChange, entry: ProtectionEntry) -> None:
        timeout = self.config.mutation_timeout_seconds
        future = self._mutation_executor.submit(
            self.transport.apply_display_identifier,
            change.participant_id,
            change.group_id,
            entry.protected_value,
            self.config.revert_reason,
        )
        try:
            applied = future.result(timeout=timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise CorrectiveMutationError(
                change.participant_id, entry.protected_value, f"no answer within {timeout}s", cause=e
            ) from e
        except Exception as e:
            raise CorrectiveMutationError(
                change.participant_id, entry.protected_value, str(e), cause=e
            ) from e
        if not applied:
            raise CorrectiveMutationError(
                change.participant_id, entry.protected_value, "mutation rejected by transport"
            )

    def _revert(
        self,
        change: IdentityChange,
        entry: ProtectionEntry,
        actor: ActorAttribution | None,
    ) -> MonitorResult:
        audit_context = self._audit_context(change, entry, actor)
        try:
            self._apply_protected_value(change, entry)
        except CorrectiveMutationError as error:
            self.error_handler.handle_corrective_mutation_error(
                error,
                ErrorContext(
                    participant_id=change.participant_id,
                    group_id=change.group_id,
                    operation="corrective_mutation",
                    component="protection_monitor",
                    metadata={"attempted_value": change.new_value},
                ),
            )
            if self.alerts_enabled:
                self.notifier.log_operator_event(
                    OperatorEventSeverity.CRITICAL,
                    f"URGENT: could not restore identifier {entry.protected_value!r} for "
                    f"{change.participant_id} (attempted {change.new_value!r}): {error}",
                    {**audit_context, "error": str(error)},
                    event_type="revert_failed",
                )
            return MonitorResult(
                MonitorOutcome.REVERT_FAILED, change, protected_value=entry.protected_value, actor=actor
            )

        logger.warning(
            f"Reverted unauthorized identifier change {change.new_value!r} -> {entry.protected_value!r}",
            **context_fields(change.participant_id, change.group_id, "change_reverted"),
        )
        warning_sent = self._warn(change.participant_id, entry.protected_value)
        self.notifier.log_operator_event(
            OperatorEventSeverity.WARNING,
            f"Reverted identifier change for {change.participant_id}: "
            f"attempted {change.new_value!r}, restored {entry.protected_value!r}",
            {**audit_context, "warning_sent": warning_sent},
            event_type="identifier_reverted",
        )
        return MonitorResult(
            MonitorOutcome.REVERTED,
            change,
            protected_value=entry.protected_value,
            actor=actor,
            warning_sent=warning_sent,
        )

    def _warn(self, participant_id: str, protected_value: str) -> bool:
        try:
            return bool(
                self.notifier.warn_participant(
                    participant_id, LOCKED_IDENTIFIER_NOTICE.format(value=protected_value)
                )
            )
        except Exception as e:
            logger.warning(f"Could not warn participant {participant_id}: {e}")
            return False

    @staticmethod
    def _audit_context(
        change: IdentityChange, entry: ProtectionEntry, actor: ActorAttribution | None
    ) -> dict[str, Any]:
        return {
            "participant_id": change.participant_id,
            "group_id": change.group_id,
            "previous_value": change.old_value,
            "attempted_value": change.new_value,
            "restored_value": entry.protected_value,
            "protection_source": entry.source.value,
            "actor_id": actor.actor_id if actor else None,
            "actor_privilege": actor.privilege_level.value if actor else None,
        }

    def close(self) -> None:
        self._oracle_executor.shutdown(wait=False)
        self._mutation_executor.shutdown(wait=False)
