"""
Operator audit service.
Implements the notification sink: every operator event is logged, optionally
persisted to the operator_events table, and participant warnings are delivered
through the transport as one-way messages.
"""

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from src.data.database_factory import SessionScope, get_session
from src.data.models import OperatorEventSeverity
from src.data.repositories import OperatorEventRepository
from src.data.schemas import OperatorEventCreate, OperatorEventResponse
from src.exceptions import DatabaseError
from src.services.interfaces import NotificationSink, Transport
from src.utils.logging import context_fields

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    OperatorEventSeverity.INFO: logging.INFO,
    OperatorEventSeverity.WARNING: logging.WARNING,
    OperatorEventSeverity.HIGH: logging.ERROR,
    OperatorEventSeverity.CRITICAL: logging.CRITICAL,
}


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return str(value)


class OperatorAuditService(NotificationSink):
    """Notification sink backed by logging, the operator event table and the transport."""

    def __init__(
        self,
        transport: Transport,
        session_scope: SessionScope | None = None,
        persist_events: bool = True,
    ):
        self.transport = transport
        self.session_scope = session_scope or get_session
        self.persist_events = persist_events

    def warn_participant(self, participant_id: str, message: str) -> bool:
        try:
            delivered = bool(self.transport.send_interactive_message(participant_id, message, ()))
        except Exception as e:
            logger.warning(f"Warning to {participant_id} could not be sent: {e}")
            return False
        if not delivered:
            logger.warning(f"Warning to {participant_id} was not delivered")
        return delivered

    def log_operator_event(
        self,
        severity: OperatorEventSeverity,
        message: str,
        context: dict[str, Any] | None = None,
        event_type: str = "general",
    ) -> None:
        """
        Record an event for operators.

        The event is always logged. When persistence is enabled it is also
        stored; a storage failure is logged with the event and does not undo
        the action that produced it.
        """
        severity = OperatorEventSeverity(severity)
        context = _jsonable(dict(context or {}))
        participant_id = context.get("participant_id")
        group_id = context.get("group_id")

        logger.log(
            _LOG_LEVELS[severity],
            f"[{event_type}] {message}",
            **context_fields(participant_id, group_id, event_type),
        )

        if not self.persist_events:
            return

        try:
            with self.session_scope() as session:
                OperatorEventRepository(session).create(
                    OperatorEventCreate(
                        event_type=event_type,
                        severity=severity,
                        message=message,
                        participant_id=participant_id,
                        group_id=group_id,
                        context=context,
                    )
                )
        except (DatabaseError, SQLAlchemyError) as e:
            logger.error(f"Operator event '{event_type}' not persisted: {e}")

    def recent_events(
        self, group_id: str | None = None, limit: int = 20, event_type: str | None = None
    ) -> list[OperatorEventResponse]:
        with self.session_scope() as session:
            events = OperatorEventRepository(session).list_recent(group_id, limit, event_type)
            return [OperatorEventResponse.model_validate(e) for e in events]

    def event_counts(self, group_id: str | None = None) -> dict[str, int]:
        with self.session_scope() as session:
            return OperatorEventRepository(session).count_by_type(group_id)
