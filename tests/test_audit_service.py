"""
Tests for the operator audit service.
"""

from unittest.mock import Mock

from src.data.models import OperatorEventSeverity
from src.services.audit_service import OperatorAuditService
from src.services.interfaces import Transport


class TestOperatorAuditService:
    """Test cases for OperatorAuditService."""

    def setup_method(self):
        """Set up test fixtures."""
        self.transport = Mock(spec=Transport)
        self.transport.send_interactive_message.return_value = True

    def test_event_is_persisted(self, session_scope):
        # Arrange
        service = OperatorAuditService(self.transport, session_scope=session_scope)

        # Act
        service.log_operator_event(
            OperatorEventSeverity.WARNING,
            "Reverted identifier change",
            {"participant_id": "p1", "group_id": "g1", "attempted_value": "x"},
            event_type="identifier_reverted",
        )

        # Assert
        events = service.recent_events("g1")
        assert len(events) == 1
        assert events[0].participant_id == "p1"
        assert events[0].severity == "warning"
        assert events[0].context["attempted_value"] == "x"
        assert service.event_counts() == {"identifier_reverted": 1}

    def test_event_context_is_made_serializable(self, session_scope):
        service = OperatorAuditService(self.transport, session_scope=session_scope)

        service.log_operator_event(
            OperatorEventSeverity.INFO, "note", {"group_id": "g1", "values": {1, 2}, "obj": object()}
        )

        context = service.recent_events("g1")[0].context
        assert sorted(context["values"]) == [1, 2]
        assert isinstance(context["obj"], str)

    def test_persistence_disabled(self):
        # Arrange
        scope = Mock()
        service = OperatorAuditService(self.transport, session_scope=scope, persist_events=False)

        # Act
        service.log_operator_event(OperatorEventSeverity.CRITICAL, "revert failed")

        # Assert
        scope.assert_not_called()

    def test_filters_by_type(self, session_scope):
        service = OperatorAuditService(self.transport, session_scope=session_scope)
        service.log_operator_event(OperatorEventSeverity.INFO, "a", {"group_id": "g1"}, event_type="one")
        service.log_operator_event(OperatorEventSeverity.INFO, "b", {"group_id": "g1"}, event_type="two")

        events = service.recent_events("g1", event_type="two")

        assert [e.message for e in events] == ["b"]

    def test_warn_participant_uses_one_way_message(self):
        service = OperatorAuditService(self.transport, session_scope=Mock())

        assert service.warn_participant("p1", "locked") is True
        self.transport.send_interactive_message.assert_called_once_with("p1", "locked", ())

    def test_warn_participant_failure(self):
        self.transport.send_interactive_message.side_effect = RuntimeError("closed")
        service = OperatorAuditService(self.transport, session_scope=Mock())

        assert service.warn_participant("p1", "locked") is False
