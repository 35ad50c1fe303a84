"""
Identity administration service.
Operator commands for interviews and protection: force start, reset,
protection override and removal, status queries and reporting helpers.
"""

import logging
from typing import Any, Mapping

from config.config import IdentifierConfig
from src.data.database_factory import SessionScope, get_session
from src.data.models import OperatorEventSeverity, ProtectionSource
from src.data.repositories import IdentifierRecordRepository, InterviewSessionRepository
from src.data.schemas import (
    AssignmentStats,
    IdentifierDecoding,
    IdentifierRecordResponse,
    InterviewSessionSummary,
    InterviewStats,
)
from src.exceptions import InvalidInputError
from src.logic.identifier_space import IdentifierSpaceGenerator, decode_identifier
from src.logic.interview_events import BeginRequested
from src.logic.protection_ledger import ProtectionEntry, ProtectionLedger
from src.services.interfaces import NotificationSink, Transport
from src.services.interview_service import InterviewOutcome, InterviewService

logger = logging.getLogger(__name__)

OVERRIDE_REASON = "Administrative designation override"


class IdentityAdminService:
    """Administrative surface over the interview service and the protection ledger."""

    def __init__(
        self,
        interview_service: InterviewService,
        ledger: ProtectionLedger,
        transport: Transport,
        notifier: NotificationSink,
        session_scope: SessionScope | None = None,
        identifier_config: IdentifierConfig | None = None,
    ):
        self.interview_service = interview_service
        self.ledger = ledger
        self.transport = transport
        self.notifier = notifier
        self.session_scope = session_scope or get_session
        self.identifier_config = identifier_config or IdentifierConfig()

    def _audit(self, event_type: str, message: str, **context: Any) -> None:
        self.notifier.log_operator_event(
            OperatorEventSeverity.INFO, message, context, event_type=event_type
        )

    # Interview administration

    def force_start_interview(
        self, participant_id: str, group_id: str, requested_by: str | None = None
    ) -> InterviewOutcome:
        """Close any open session and start a new one."""
        outcome = self.interview_service.handle(
            BeginRequested(participant_id, group_id, forced=True, requested_by=requested_by)
        )
        self._audit(
            "interview_force_started",
            f"Interview force-started for {participant_id}",
            participant_id=participant_id,
            group_id=group_id,
            requested_by=requested_by,
            delivery_failed=outcome.delivery_failed,
        )
        return outcome

    def reset_interview(
        self, participant_id: str, group_id: str, requested_by: str | None = None
    ) -> int:
        """Close open sessions without an identifier; returns how many were closed."""
        closed = self.interview_service.reset(participant_id, group_id)
        self._audit(
            "interview_reset",
            f"Interview reset for {participant_id} ({closed} session(s) closed)",
            participant_id=participant_id,
            group_id=group_id,
            requested_by=requested_by,
            closed_sessions=closed,
        )
        return closed

    # Protection administration

    def override_protection(
        self,
        participant_id: str,
        group_id: str,
        value: str,
        requested_by: str | None = None,
        apply: bool = True,
    ) -> ProtectionEntry:
        """
        Enforce a new value for a participant.

        The ledger is written before the value is applied, so the change
        notification caused by applying it matches the protected value.
        """
        value = (value or "").strip()
        if not value:
            raise InvalidInputError("value", value, "protected value must not be empty")

        entry = self.ledger.protect(
            participant_id, group_id, value, ProtectionSource.ADMINISTRATIVE_OVERRIDE
        )
        applied = None
        if apply:
            try:
                applied = bool(
                    self.transport.apply_display_identifier(
                        participant_id, group_id, value, OVERRIDE_REASON
                    )
                )
            except Exception as e:
                logger.error(f"Applying override {value!r} to {participant_id} failed: {e}")
                applied = False
            if not applied:
                self.notifier.log_operator_event(
                    OperatorEventSeverity.HIGH,
                    f"Override {value!r} is protected but could not be applied to {participant_id}",
                    {"participant_id": participant_id, "group_id": group_id, "value": value},
                    event_type="apply_failed",
                )

        self._audit(
            "protection_override",
            f"Protection for {participant_id} set to {value!r}",
            participant_id=participant_id,
            group_id=group_id,
            value=value,
            requested_by=requested_by,
            applied=applied,
        )
        return entry

    def protect_current_value(
        self,
        participant_id: str,
        group_id: str,
        current_value: str,
        requested_by: str | None = None,
    ) -> ProtectionEntry:
        """Lock whatever the participant displays right now."""
        if not current_value:
            raise InvalidInputError("current_value", current_value, "nothing to protect")
        entry = self.ledger.protect(
            participant_id, group_id, current_value, ProtectionSource.MANUAL_CURRENT_VALUE_LOCK
        )
        self._audit(
            "protection_locked",
            f"Current value {current_value!r} of {participant_id} locked",
            participant_id=participant_id,
            group_id=group_id,
            value=current_value,
            requested_by=requested_by,
        )
        return entry

    def bulk_protect_current(
        self,
        group_id: str,
        displayed: Mapping[str, str],
        skip_existing: bool = True,
        requested_by: str | None = None,
    ) -> int:
        """Lock the displayed value of every listed participant."""
        protected = 0
        for participant_id, value in displayed.items():
            if not value:
                continue
            if skip_existing and self.ledger.is_protected(participant_id, group_id):
                continue
            self.ledger.protect(
                participant_id, group_id, value, ProtectionSource.MANUAL_CURRENT_VALUE_LOCK
            )
            protected += 1
        self._audit(
            "protection_bulk_locked",
            f"Locked {protected} displayed value(s) in {group_id}",
            group_id=group_id,
            requested_by=requested_by,
            protected=protected,
        )
        return protected

    def protect_onboarded(self, group_id: str | None = None, overwrite: bool = False) -> int:
        """Protect every participant whose interview produced an identifier."""
        with self.session_scope() as db:
            sessions = InterviewSessionRepository(db).list_assigned(group_id)
            latest: dict[tuple[str, str], ProtectionEntry] = {}
            for session in sessions:
                latest[(session.participant_id, session.group_id)] = ProtectionEntry(
                    participant_id=session.participant_id,
                    group_id=session.group_id,
                    protected_value=session.assigned_identifier,
                    source=ProtectionSource.INTERVIEW_ASSIGNMENT,
                    assigned_at=session.completed_at or session.started_at,
                )
        return self.ledger.rehydrate(latest.values(), overwrite=overwrite)

    def remove_protection(
        self, participant_id: str, group_id: str, requested_by: str | None = None
    ) -> bool:
        removed = self.ledger.remove(participant_id, group_id)
        if removed:
            self._audit(
                "protection_removed",
                f"Protection removed for {participant_id}",
                participant_id=participant_id,
                group_id=group_id,
                requested_by=requested_by,
            )
        return removed

    def query_protection_status(self, participant_id: str, group_id: str) -> ProtectionEntry | None:
        return self.ledger.get(participant_id, group_id)

    def list_protected(self, group_id: str | None = None) -> list[ProtectionEntry]:
        return self.ledger.entries(group_id)

    def protection_stats(self) -> dict[str, Any]:
        return self.ledger.stats()

    # Reporting

    def interview_stats(self, group_id: str | None = None) -> InterviewStats:
        with self.session_scope() as db:
            counts = InterviewSessionRepository(db).get_statistics(group_id)
        total = counts["total_sessions"]
        rate = round(counts["completed"] / total * 100, 1) if total else 0.0
        return InterviewStats(**counts, completion_rate=rate)

    def delivery_failed_sessions(self, group_id: str | None = None) -> list[InterviewSessionSummary]:
        with self.session_scope() as db:
            sessions = InterviewSessionRepository(db).list_delivery_failed(group_id)
            return [InterviewSessionSummary.model_validate(s) for s in sessions]

    def incomplete_sessions(self, group_id: str | None = None) -> list[InterviewSessionSummary]:
        with self.session_scope() as db:
            sessions = InterviewSessionRepository(db).list_incomplete(group_id)
            return [InterviewSessionSummary.model_validate(s) for s in sessions]

    def recent_sessions(
        self, limit: int = 10, group_id: str | None = None
    ) -> list[InterviewSessionSummary]:
        with self.session_scope() as db:
            sessions = InterviewSessionRepository(db).list_recent(limit, group_id)
            return [InterviewSessionSummary.model_validate(s) for s in sessions]

    def participant_info(self, participant_id: str, group_id: str) -> dict[str, Any]:
        """Sessions, reserved identifiers and protection state of one participant."""
        with self.session_scope() as db:
            sessions = InterviewSessionRepository(db).list_for_participant(participant_id, group_id)
            records = IdentifierRecordRepository(db).get_by_participant(participant_id, group_id)
            summaries = [InterviewSessionSummary.model_validate(s) for s in sessions]
            identifiers = [IdentifierRecordResponse.model_validate(r) for r in records]

        entry = self.ledger.get(participant_id, group_id)
        assigned = next((s.assigned_identifier for s in summaries if s.assigned_identifier), None)
        return {
            "participant_id": participant_id,
            "group_id": group_id,
            "assigned_identifier": assigned,
            "sessions": summaries,
            "identifier_records": identifiers,
            "protection": entry.to_dict() if entry else None,
        }

    def identifier_stats(self, group_id: str | None = None) -> AssignmentStats:
        with self.session_scope() as db:
            generator = IdentifierSpaceGenerator(
                IdentifierRecordRepository(db), self.identifier_config
            )
            return generator.assignment_stats(group_id)

    def check_identifier_available(self, value: str, group_id: str) -> dict[str, Any]:
        """Whether a value could still be assigned in the group."""
        displayed = value in self.transport.displayed_identifiers(group_id)
        with self.session_scope() as db:
            reserved = IdentifierRecordRepository(db).is_reserved(value)
        decoding = decode_identifier(value)
        return {
            "identifier": value,
            "available": not (displayed or reserved),
            "displayed": displayed,
            "reserved": reserved,
            "decoding": decoding,
        }

    def decode_identifier(self, value: str) -> IdentifierDecoding:
        return decode_identifier(value)
