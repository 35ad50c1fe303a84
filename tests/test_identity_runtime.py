"""
End-to-end tests for the assembled identity runtime.
An interview assigns an identifier which the monitor then defends.
"""

from unittest.mock import Mock

import pytest

from src.data.models import AnswerChoice, ProtectionSource
from src.logic.interview_events import (
    AnswerReceived,
    BeginRequested,
    FreeTextField,
    FreeTextReceived,
    StartAcknowledged,
)
from src.logic.protection_ledger import ProtectionLedger
from src.logic.protection_monitor import LOCKED_IDENTIFIER_NOTICE, IdentityChange, MonitorOutcome
from src.services.identity_runtime import build_identity_runtime
from src.services.interfaces import ActorAttribution, AuthorizationOracle, PrivilegeLevel

P = "participant-1"
G = "group-1"
ASSIGNED = "TEST-G3-PATTERN-⋗"


class TestIdentityRuntime:
    """Test cases for the composed runtime."""

    @pytest.fixture(autouse=True)
    def _runtime(self, test_config, session_scope, transport):
        self.config = test_config
        self.session_scope = session_scope
        self.transport = transport
        self.oracle = Mock(spec=AuthorizationOracle)
        self.oracle.recent_actor_for.return_value = None
        self.runtime = self._build()
        yield
        self.runtime.close()

    def _build(self, **kwargs):
        return build_identity_runtime(
            self.transport,
            self.oracle,
            app_config=self.config,
            session_scope=self.session_scope,
            **kwargs,
        )

    def _run_interview(self, runtime, participant_id=P):
        service = runtime.interview_service
        service.handle(BeginRequested(participant_id, G))
        service.handle(StartAcknowledged(participant_id, G))
        service.handle(FreeTextReceived(participant_id, G, FreeTextField.TRIGGER_RESPONSE, "blue"))
        outcome = None
        for index, choice in enumerate(["yes"] * 5 + ["no"] * 3):
            outcome = service.handle(AnswerReceived(participant_id, G, index, AnswerChoice(choice)))
        return outcome

    def test_services_share_one_ledger(self):
        assert self.runtime.interview_service.ledger is self.runtime.ledger
        assert self.runtime.protection_monitor.ledger is self.runtime.ledger
        assert self.runtime.admin_service.ledger is self.runtime.ledger

    def test_interview_assigns_and_protects(self):
        # Act
        outcome = self._run_interview(self.runtime)

        # Assert
        assert outcome.completed
        assert outcome.assigned_identifier == ASSIGNED
        assert outcome.applied and outcome.protected
        assert self.transport.displayed[G][P] == ASSIGNED
        entry = self.runtime.ledger.get(P, G)
        assert entry.protected_value == ASSIGNED
        assert entry.source == ProtectionSource.INTERVIEW_ASSIGNMENT

    def test_unauthorized_change_is_reverted(self):
        # Arrange
        self._run_interview(self.runtime)
        self.transport.displayed[G][P] = "my-own-name"

        # Act
        result = self.runtime.on_identity_change(IdentityChange(P, G, ASSIGNED, "my-own-name"))

        # Assert
        assert result.outcome == MonitorOutcome.REVERTED
        assert result.warning_sent is True
        assert self.transport.displayed[G][P] == ASSIGNED
        assert LOCKED_IDENTIFIER_NOTICE.format(value=ASSIGNED) in self.transport.messages_for(P)
        events = self.runtime.audit_service.recent_events(group_id=G, event_type="identifier_reverted")
        assert len(events) == 1
        assert events[0].participant_id == P

    def test_authorized_change_refreshes_baseline(self):
        # Arrange
        self._run_interview(self.runtime)
        self.oracle.recent_actor_for.return_value = ActorAttribution("owner-1", PrivilegeLevel.OWNER)

        # Act
        result = self.runtime.on_identity_change(IdentityChange(P, G, ASSIGNED, "Renamed"))

        # Assert
        assert result.outcome == MonitorOutcome.AUTHORIZED
        assert self.runtime.ledger.get(P, G).protected_value == "Renamed"

    def test_admin_override_is_defended(self):
        # Arrange
        self._run_interview(self.runtime)
        self.runtime.admin_service.override_protection(P, G, "SPEC-H5-CLEAR-∃", requested_by="admin")

        # Act
        result = self.runtime.on_identity_change(
            IdentityChange(P, G, "SPEC-H5-CLEAR-∃", ASSIGNED)
        )

        # Assert
        assert result.outcome == MonitorOutcome.REVERTED
        assert self.transport.displayed[G][P] == "SPEC-H5-CLEAR-∃"

    def test_disabled_monitor_ignores_changes(self):
        # Arrange
        self.config.feature_flags.enable_protection_monitor = False
        runtime = self._build()

        # Act
        result = runtime.on_identity_change(IdentityChange(P, G, ASSIGNED, "other"))
        runtime.close()

        # Assert
        assert result.outcome == MonitorOutcome.DISABLED
        self.oracle.recent_actor_for.assert_not_called()

    def test_ledger_rehydrated_on_start(self):
        # Arrange
        self._run_interview(self.runtime)
        self.config.persistence.rehydrate_ledger_on_start = True

        # Act
        runtime = self._build(ledger=ProtectionLedger())
        runtime.close()

        # Assert
        assert runtime.ledger is not self.runtime.ledger
        assert runtime.ledger.get(P, G).protected_value == ASSIGNED
