"""
Tests for the identity administration service.
"""

from unittest.mock import Mock

import pytest

from src.data.models import AnswerChoice, InterviewStage, ProtectionSource
from src.exceptions import InvalidInputError
from src.logic.identifier_space import TOTAL_SPACE
from src.logic.interview_events import (
    AnswerReceived,
    BeginRequested,
    FreeTextField,
    FreeTextReceived,
    StartAcknowledged,
)
from src.services.admin_service import OVERRIDE_REASON, IdentityAdminService
from src.services.interview_service import InterviewService

G = "group-1"


class TestIdentityAdminService:
    """Test cases for IdentityAdminService."""

    @pytest.fixture(autouse=True)
    def _service(self, session_scope, ledger, transport):
        self.ledger = ledger
        self.transport = transport
        self.notifier = Mock()
        self.interview_service = InterviewService(
            transport, ledger, self.notifier, session_scope=session_scope
        )
        self.admin = IdentityAdminService(
            self.interview_service, ledger, transport, self.notifier, session_scope=session_scope
        )

    def _complete_interview(self, participant_id, choices=("yes",) * 8):
        self.interview_service.handle(BeginRequested(participant_id, G))
        self.interview_service.handle(StartAcknowledged(participant_id, G))
        self.interview_service.handle(
            FreeTextReceived(participant_id, G, FreeTextField.TRIGGER_RESPONSE, "green")
        )
        outcome = None
        for index, choice in enumerate(choices):
            outcome = self.interview_service.handle(
                AnswerReceived(participant_id, G, index, AnswerChoice(choice))
            )
        return outcome

    def _event_types(self):
        return [c.kwargs["event_type"] for c in self.notifier.log_operator_event.call_args_list]

    def test_force_start_replaces_open_session(self):
        # Arrange
        self.interview_service.handle(BeginRequested("p1", G))

        # Act
        outcome = self.admin.force_start_interview("p1", G, requested_by="admin")

        # Assert
        assert outcome.stage == InterviewStage.INITIATED
        assert len(self.admin.incomplete_sessions(G)) == 1
        assert "interview_force_started" in self._event_types()

    def test_reset_interview(self):
        self.interview_service.handle(BeginRequested("p1", G))

        closed = self.admin.reset_interview("p1", G, requested_by="admin")

        assert closed == 1
        assert self.admin.incomplete_sessions(G) == []
        assert self.admin.interview_stats(G).reset == 1

    def test_override_protection_applies_and_protects(self):
        # Act
        entry = self.admin.override_protection("p1", G, "  UNIT-A1-VOID-░ ", requested_by="admin")

        # Assert
        assert entry.protected_value == "UNIT-A1-VOID-░"
        assert entry.source == ProtectionSource.ADMINISTRATIVE_OVERRIDE
        assert self.transport.applied[-1] == ("p1", G, "UNIT-A1-VOID-░", OVERRIDE_REASON)
        assert self.admin.query_protection_status("p1", G) == entry

    def test_override_protection_apply_failure_is_reported(self):
        self.transport.apply_succeeds = False

        entry = self.admin.override_protection("p1", G, "UNIT-A1-VOID-░")

        assert self.ledger.get("p1", G) == entry
        assert "apply_failed" in self._event_types()

    def test_override_rejects_blank_value(self):
        with pytest.raises(InvalidInputError):
            self.admin.override_protection("p1", G, "   ")

    def test_remove_protection(self):
        self.admin.override_protection("p1", G, "X", apply=False)

        assert self.admin.remove_protection("p1", G) is True
        assert self.admin.remove_protection("p1", G) is False
        assert self.admin.query_protection_status("p1", G) is None

    def test_protect_current_value(self):
        entry = self.admin.protect_current_value("p1", G, "CustomName")

        assert entry.source == ProtectionSource.MANUAL_CURRENT_VALUE_LOCK
        assert self.transport.applied == []

    def test_bulk_protect_current_skips_existing(self):
        # Arrange
        self.admin.override_protection("p1", G, "Kept", apply=False)

        # Act
        count = self.admin.bulk_protect_current(G, {"p1": "Other", "p2": "Two", "p3": ""})

        # Assert
        assert count == 1
        assert self.ledger.get("p1", G).protected_value == "Kept"
        assert self.ledger.get("p2", G).protected_value == "Two"
        assert self.ledger.get("p3", G) is None

    def test_protect_onboarded_rebuilds_ledger(self):
        # Arrange
        outcome = self._complete_interview("p1")
        self.ledger.clear()

        # Act
        loaded = self.admin.protect_onboarded(G)

        # Assert
        assert loaded == 1
        entry = self.ledger.get("p1", G)
        assert entry.protected_value == outcome.assigned_identifier
        assert entry.source == ProtectionSource.INTERVIEW_ASSIGNMENT

    def test_list_protected_and_stats(self):
        self._complete_interview("p1")
        self.admin.override_protection("p2", G, "X", apply=False)

        assert {e.participant_id for e in self.admin.list_protected(G)} == {"p1", "p2"}
        assert self.admin.protection_stats()["total"] == 2

    def test_interview_stats(self):
        # Arrange
        self._complete_interview("p1")
        self.interview_service.handle(BeginRequested("p2", G))

        # Act
        stats = self.admin.interview_stats(G)

        # Assert
        assert stats.total_sessions == 2
        assert stats.completed == 1
        assert stats.in_progress == 1
        assert stats.completion_rate == 50.0

    def test_delivery_failed_sessions(self):
        self.transport.deliverable = False
        self.interview_service.handle(BeginRequested("p1", G))

        failed = self.admin.delivery_failed_sessions(G)

        assert [s.participant_id for s in failed] == ["p1"]
        assert failed[0].delivery_failed is True

    def test_recent_sessions(self):
        self.interview_service.handle(BeginRequested("p1", G))
        self.interview_service.handle(BeginRequested("p2", G))

        assert len(self.admin.recent_sessions(limit=1)) == 1
        assert len(self.admin.recent_sessions(limit=10, group_id=G)) == 2

    def test_participant_info(self):
        # Arrange
        outcome = self._complete_interview("p1")

        # Act
        info = self.admin.participant_info("p1", G)

        # Assert
        assert info["assigned_identifier"] == outcome.assigned_identifier
        assert len(info["sessions"]) == 1
        assert [r.identifier for r in info["identifier_records"]] == [outcome.assigned_identifier]
        assert info["protection"]["protected_value"] == outcome.assigned_identifier

    def test_identifier_stats(self):
        self._complete_interview("p1")

        stats = self.admin.identifier_stats()

        assert stats.total_assigned == 1
        assert stats.remaining == TOTAL_SPACE - 1

    def test_check_identifier_available(self):
        # Arrange
        outcome = self._complete_interview("p1")

        # Act
        taken = self.admin.check_identifier_available(outcome.assigned_identifier, G)
        free = self.admin.check_identifier_available("NODE-A1-ECHO-░", G)

        # Assert
        assert taken["available"] is False
        assert taken["reserved"] is True
        assert taken["displayed"] is True
        assert free["available"] is True
        assert free["decoding"].classification_meaning == "Network Connection Point"
