"""
Unit tests for the protection monitor.
Tests accept/revert decisions, fail-closed authorization and escalation.
"""

import threading
import time
from unittest.mock import Mock

from config.config import ProtectionConfig
from src.data.models import OperatorEventSeverity, ProtectionSource
from src.logic.protection_ledger import ProtectionLedger
from src.logic.protection_monitor import (
    LOCKED_IDENTIFIER_NOTICE,
    IdentityChange,
    MonitorOutcome,
    ProtectionMonitor,
)
from src.services.interfaces import (
    ActorAttribution,
    AuthorizationOracle,
    ChangeKind,
    PrivilegeLevel,
    Transport,
)
from src.utils.identity_error_handler import IdentityErrorHandler

PROTECTED = "TEST-G3-PATTERN-⋗"


class TestProtectionMonitor:
    """Test cases for ProtectionMonitor."""

    def setup_method(self):
        """Set up test fixtures."""
        self.ledger = ProtectionLedger()
        self.ledger.protect("p1", "g1", PROTECTED, ProtectionSource.INTERVIEW_ASSIGNMENT)
        self.oracle = Mock(spec=AuthorizationOracle)
        self.oracle.recent_actor_for.return_value = None
        self.transport = Mock(spec=Transport)
        self.transport.apply_display_identifier.return_value = True
        self.notifier = Mock()
        self.notifier.warn_participant.return_value = True
        self.config = ProtectionConfig(oracle_timeout_seconds=0.2, mutation_timeout_seconds=0.2)
        self.error_handler = IdentityErrorHandler()
        self.monitor = self._monitor()

    def teardown_method(self):
        self.monitor.close()

    def _monitor(self, **kwargs):
        return ProtectionMonitor(
            kwargs.pop("ledger", self.ledger),
            self.oracle,
            self.transport,
            self.notifier,
            protection_config=self.config,
            error_handler=self.error_handler,
            **kwargs,
        )

    def _change(self, new_value="my-own-name", old_value=PROTECTED, participant_id="p1"):
        return IdentityChange(participant_id, "g1", old_value, new_value)

    def test_unchanged_value_skips_ledger(self):
        # Arrange
        ledger = Mock()
        self.monitor.close()
        self.monitor = self._monitor(ledger=ledger)

        # Act
        result = self.monitor.handle_change(self._change(new_value=PROTECTED))

        # Assert
        assert result.outcome == MonitorOutcome.UNCHANGED
        ledger.get.assert_not_called()
        self.transport.apply_display_identifier.assert_not_called()

    def test_untracked_participant_is_ignored(self):
        result = self.monitor.handle_change(self._change(participant_id="p2"))

        assert result.outcome == MonitorOutcome.UNTRACKED
        self.oracle.recent_actor_for.assert_not_called()

    def test_restored_value_is_a_no_op(self):
        result = self.monitor.handle_change(self._change(new_value=PROTECTED, old_value="my-own-name"))

        assert result.outcome == MonitorOutcome.MATCHES_PROTECTED
        self.oracle.recent_actor_for.assert_not_called()
        self.transport.apply_display_identifier.assert_not_called()

    def test_system_change_is_accepted(self):
        # Arrange
        self.oracle.recent_actor_for.return_value = ActorAttribution("bot", PrivilegeLevel.SYSTEM)

        # Act
        result = self.monitor.handle_change(self._change(new_value="SPEC-H5-CLEAR-∃"))

        # Assert
        assert result.outcome == MonitorOutcome.AUTHORIZED
        self.transport.apply_display_identifier.assert_not_called()
        self.notifier.log_operator_event.assert_not_called()
        self.oracle.recent_actor_for.assert_called_once_with(
            "p1", "g1", ChangeKind.DISPLAY_IDENTIFIER, self.config.audit_window_seconds
        )

    def test_authorized_change_refreshes_baseline(self):
        self.oracle.recent_actor_for.return_value = ActorAttribution("owner", PrivilegeLevel.OWNER)

        self.monitor.handle_change(self._change(new_value="SPEC-H5-CLEAR-∃"))

        assert self.ledger.get("p1", "g1").protected_value == "SPEC-H5-CLEAR-∃"

    def test_authorized_change_without_refresh(self):
        self.config.refresh_baseline_on_authorized_change = False
        self.oracle.recent_actor_for.return_value = ActorAttribution("mod", PrivilegeLevel.ELEVATED)

        result = self.monitor.handle_change(self._change(new_value="SPEC-H5-CLEAR-∃"))

        assert result.outcome == MonitorOutcome.AUTHORIZED
        assert self.ledger.get("p1", "g1").protected_value == PROTECTED

    def test_unattributed_change_is_reverted(self):
        # Act
        result = self.monitor.handle_change(self._change())

        # Assert
        assert result.outcome == MonitorOutcome.REVERTED
        assert result.warning_sent is True
        self.transport.apply_display_identifier.assert_called_once_with(
            "p1", "g1", PROTECTED, self.config.revert_reason
        )
        self.notifier.warn_participant.assert_called_once_with(
            "p1", LOCKED_IDENTIFIER_NOTICE.format(value=PROTECTED)
        )
        self.notifier.log_operator_event.assert_called_once()
        args, kwargs = self.notifier.log_operator_event.call_args
        assert args[0] == OperatorEventSeverity.WARNING
        assert args[2]["attempted_value"] == "my-own-name"
        assert args[2]["restored_value"] == PROTECTED
        assert kwargs["event_type"] == "identifier_reverted"

    def test_ordinary_actor_is_reverted(self):
        self.oracle.recent_actor_for.return_value = ActorAttribution("p1", PrivilegeLevel.ORDINARY)

        result = self.monitor.handle_change(self._change())

        assert result.outcome == MonitorOutcome.REVERTED
        assert result.actor.actor_id == "p1"

    def test_oracle_error_fails_closed(self):
        # Arrange
        self.oracle.recent_actor_for.side_effect = ConnectionError("audit log unavailable")

        # Act
        result = self.monitor.handle_change(self._change())

        # Assert
        assert result.outcome == MonitorOutcome.REVERTED
        stats = self.error_handler.get_recovery_stats()["recovery_stats"]
        assert stats["authorization_check"] == {"fallback_to_default": 1}

    def test_oracle_timeout_fails_closed(self):
        # Arrange
        release = threading.Event()

        def slow_oracle(*args):
            release.wait(2)
            return ActorAttribution("bot", PrivilegeLevel.SYSTEM)

        self.oracle.recent_actor_for.side_effect = slow_oracle

        # Act
        started = time.monotonic()
        result = self.monitor.handle_change(self._change())
        elapsed = time.monotonic() - started
        release.set()

        # Assert
        assert result.outcome == MonitorOutcome.REVERTED
        assert elapsed < 1.5
        self.transport.apply_display_identifier.assert_called_once()

    def test_hung_oracle_calls_do_not_starve_reverts(self):
        # Arrange
        release = threading.Event()
        self.oracle.recent_actor_for.side_effect = lambda *args: release.wait(30)
        participants = [f"p{i}" for i in range(self.config.max_workers + 2)]
        for participant_id in participants:
            self.ledger.protect(participant_id, "g1", PROTECTED, ProtectionSource.INTERVIEW_ASSIGNMENT)

        # Act
        try:
            results = [
                self.monitor.handle_change(self._change(participant_id=participant_id))
                for participant_id in participants
            ]
        finally:
            release.set()

        # Assert
        assert [r.outcome for r in results] == [MonitorOutcome.REVERTED] * len(participants)
        applied_to = [c.args[0] for c in self.transport.apply_display_identifier.call_args_list]
        assert applied_to == participants

    def test_failed_revert_escalates(self):
        # Arrange
        self.transport.apply_display_identifier.return_value = False

        # Act
        result = self.monitor.handle_change(self._change())

        # Assert
        assert result.outcome == MonitorOutcome.REVERT_FAILED
        self.notifier.warn_participant.assert_not_called()
        self.notifier.log_operator_event.assert_called_once()
        args, kwargs = self.notifier.log_operator_event.call_args
        assert args[0] == OperatorEventSeverity.CRITICAL
        assert kwargs["event_type"] == "revert_failed"
        stats = self.error_handler.get_recovery_stats()["recovery_stats"]
        assert stats["corrective_mutation"] == {"escalate_to_admin": 1}

    def test_revert_exception_escalates(self):
        self.transport.apply_display_identifier.side_effect = PermissionError("missing permissions")

        result = self.monitor.handle_change(self._change())

        assert result.outcome == MonitorOutcome.REVERT_FAILED
        assert "missing permissions" in self.notifier.log_operator_event.call_args[0][1]

    def test_failed_revert_without_alerts(self):
        self.transport.apply_display_identifier.return_value = False
        self.monitor.close()
        self.monitor = self._monitor(alerts_enabled=False)

        result = self.monitor.handle_change(self._change())

        assert result.outcome == MonitorOutcome.REVERT_FAILED
        self.notifier.log_operator_event.assert_not_called()

    def test_warning_failure_does_not_block_audit(self):
        self.notifier.warn_participant.side_effect = RuntimeError("dm closed")

        result = self.monitor.handle_change(self._change())

        assert result.outcome == MonitorOutcome.REVERTED
        assert result.warning_sent is False
        self.notifier.log_operator_event.assert_called_once()

    def test_revert_then_echo_notification(self):
        # Act
        first = self.monitor.handle_change(self._change())
        echo = self.monitor.handle_change(self._change(new_value=PROTECTED, old_value="my-own-name"))

        # Assert
        assert first.reverted
        assert echo.outcome == MonitorOutcome.MATCHES_PROTECTED
        assert self.transport.apply_display_identifier.call_count == 1

    def test_disabled_monitor(self):
        self.monitor.close()
        self.monitor = self._monitor(enabled=False)

        result = self.monitor.handle_change(self._change())

        assert result.outcome == MonitorOutcome.DISABLED
        self.transport.apply_display_identifier.assert_not_called()
