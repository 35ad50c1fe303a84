"""
Repository classes for data access layer.
Implements the repository pattern for interview sessions, identifier records and operator events.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.exceptions import DatabaseError

from .models import (
    IdentifierRecord,
    InterviewSessionRecord,
    InterviewStage,
    OperatorEvent,
    SessionCloseReason,
)
from .schemas import IdentifierRecordCreate, OperatorEventCreate

logger = logging.getLogger(__name__)


class BaseRepository:
    """Base repository with common read operations."""

    def __init__(self, session: Session, model_class):
        self.session = session
        self.model_class = model_class

    def _fail(self, action: str, error: Exception) -> DatabaseError:
        logger.error(f"Error {action} {self.model_class.__name__}: {error}")
        return DatabaseError(f"Failed {action} {self.model_class.__name__}: {error}", cause=error)

    def get_by_id(self, id: UUID) -> Any | None:
        """Get entity by ID."""
        try:
            return self.session.query(self.model_class).filter(self.model_class.id == id).first()
        except SQLAlchemyError as e:
            raise self._fail("getting", e) from e

    def get_all(self, limit: int | None = None, offset: int | None = None) -> list[Any]:
        """Get all entities with optional pagination."""
        try:
            query = self.session.query(self.model_class)
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)
            return query.all()
        except SQLAlchemyError as e:
            raise self._fail("listing", e) from e

    def count(self) -> int:
        """Count total entities."""
        try:
            return self.session.query(self.model_class).count()
        except SQLAlchemyError as e:
            raise self._fail("counting", e) from e


class InterviewSessionRepository(BaseRepository):
    """Repository for InterviewSessionRecord entities."""

    def __init__(self, session: Session):
        super().__init__(session, InterviewSessionRecord)

    def create(
        self,
        participant_id: str,
        group_id: str,
        is_forced: bool = False,
        requested_by: str | None = None,
    ) -> InterviewSessionRecord:
        """Create a new session in the initiated stage."""
        try:
            record = InterviewSessionRecord(
                participant_id=participant_id,
                group_id=group_id,
                stage=InterviewStage.INITIATED.value,
                question_index=0,
                answers=[],
                trait_scores={},
                is_forced=is_forced,
                requested_by=requested_by,
                started_at=datetime.utcnow(),
            )
            self.session.add(record)
            self.session.flush()
            return record
        except SQLAlchemyError as e:
            raise self._fail("creating", e) from e

    def save(self, record: InterviewSessionRecord) -> InterviewSessionRecord:
        """Flush pending changes of a session."""
        try:
            record.updated_at = datetime.utcnow()
            self.session.flush()
            return record
        except SQLAlchemyError as e:
            raise self._fail("saving", e) from e

    def get_open_session(self, participant_id: str, group_id: str) -> InterviewSessionRecord | None:
        """Get the newest session for the pair that has not completed."""
        try:
            return (
                self.session.query(InterviewSessionRecord)
                .filter(
                    InterviewSessionRecord.participant_id == participant_id,
                    InterviewSessionRecord.group_id == group_id,
                    InterviewSessionRecord.stage != InterviewStage.COMPLETED.value,
                )
                .order_by(desc(InterviewSessionRecord.started_at))
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("getting open", e) from e

    def get_latest(self, participant_id: str, group_id: str) -> InterviewSessionRecord | None:
        """Get the newest session for the pair regardless of stage."""
        try:
            return (
                self.session.query(InterviewSessionRecord)
                .filter(
                    InterviewSessionRecord.participant_id == participant_id,
                    InterviewSessionRecord.group_id == group_id,
                )
                .order_by(desc(InterviewSessionRecord.started_at))
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("getting latest", e) from e

    def get_latest_assigned(
        self, participant_id: str, group_id: str
    ) -> InterviewSessionRecord | None:
        """Get the newest completed session that produced an identifier."""
        try:
            return (
                self.session.query(InterviewSessionRecord)
                .filter(
                    InterviewSessionRecord.participant_id == participant_id,
                    InterviewSessionRecord.group_id == group_id,
                    InterviewSessionRecord.assigned_identifier.isnot(None),
                )
                .order_by(desc(InterviewSessionRecord.completed_at))
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("getting assigned", e) from e

    def close_open_sessions(
        self, participant_id: str, group_id: str, reason: SessionCloseReason
    ) -> int:
        """Mark every open session of the pair as completed without an identifier."""
        try:
            open_sessions = (
                self.session.query(InterviewSessionRecord)
                .filter(
                    InterviewSessionRecord.participant_id == participant_id,
                    InterviewSessionRecord.group_id == group_id,
                    InterviewSessionRecord.stage != InterviewStage.COMPLETED.value,
                )
                .all()
            )
            now = datetime.utcnow()
            for record in open_sessions:
                record.stage = InterviewStage.COMPLETED.value
                record.close_reason = reason.value
                record.completed_at = now
                record.updated_at = now
            self.session.flush()
            return len(open_sessions)
        except SQLAlchemyError as e:
            raise self._fail("closing", e) from e

    def _filtered(self, group_id: str | None):
        query = self.session.query(InterviewSessionRecord)
        if group_id:
            query = query.filter(InterviewSessionRecord.group_id == group_id)
        return query

    def list_assigned(self, group_id: str | None = None) -> list[InterviewSessionRecord]:
        """Completed sessions that produced an identifier, oldest first."""
        try:
            return (
                self._filtered(group_id)
                .filter(InterviewSessionRecord.assigned_identifier.isnot(None))
                .order_by(InterviewSessionRecord.completed_at)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("listing assigned", e) from e

    def list_delivery_failed(self, group_id: str | None = None) -> list[InterviewSessionRecord]:
        """Open sessions whose outbound channel could not be opened."""
        try:
            return (
                self._filtered(group_id)
                .filter(
                    InterviewSessionRecord.delivery_failed.is_(True),
                    InterviewSessionRecord.stage != InterviewStage.COMPLETED.value,
                )
                .order_by(desc(InterviewSessionRecord.started_at))
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("listing delivery failed", e) from e

    def list_incomplete(self, group_id: str | None = None) -> list[InterviewSessionRecord]:
        """Open sessions, stalled or in progress."""
        try:
            return (
                self._filtered(group_id)
                .filter(InterviewSessionRecord.stage != InterviewStage.COMPLETED.value)
                .order_by(InterviewSessionRecord.started_at)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("listing incomplete", e) from e

    def list_recent(self, limit: int = 10, group_id: str | None = None) -> list[InterviewSessionRecord]:
        """Most recently started sessions."""
        try:
            return (
                self._filtered(group_id)
                .order_by(desc(InterviewSessionRecord.started_at))
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("listing recent", e) from e

    def list_for_participant(
        self, participant_id: str, group_id: str | None = None
    ) -> list[InterviewSessionRecord]:
        """All sessions of a participant, newest first."""
        try:
            return (
                self._filtered(group_id)
                .filter(InterviewSessionRecord.participant_id == participant_id)
                .order_by(desc(InterviewSessionRecord.started_at))
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("listing participant", e) from e

    def get_statistics(self, group_id: str | None = None) -> dict[str, int]:
        """Counts by outcome."""
        try:
            query = self._filtered(group_id)
            completed_filter = InterviewSessionRecord.stage == InterviewStage.COMPLETED.value
            return {
                "total_sessions": query.count(),
                "completed": query.filter(
                    completed_filter, InterviewSessionRecord.assigned_identifier.isnot(None)
                ).count(),
                "in_progress": query.filter(~completed_filter).count(),
                "delivery_failed": query.filter(
                    InterviewSessionRecord.delivery_failed.is_(True)
                ).count(),
                "alternate_path": query.filter(
                    InterviewSessionRecord.is_alternate_path.is_(True)
                ).count(),
                "reset": query.filter(
                    InterviewSessionRecord.close_reason.in_(
                        [SessionCloseReason.RESET.value, SessionCloseReason.FORCED_RESTART.value]
                    )
                ).count(),
            }
        except SQLAlchemyError as e:
            raise self._fail("counting sessions", e) from e


class IdentifierRecordRepository(BaseRepository):
    """Repository for IdentifierRecord entities."""

    def __init__(self, session: Session):
        super().__init__(session, IdentifierRecord)

    def insert_if_absent(self, record_data: IdentifierRecordCreate) -> IdentifierRecord | None:
        """
        Reserve an identifier atomically.

        The insert runs inside a SAVEPOINT; the unique constraint on
        ``identifier`` decides. Returns None when the value is already taken,
        leaving the surrounding transaction usable.
        """
        record = IdentifierRecord(
            identifier=record_data.identifier,
            group_id=record_data.group_id,
            participant_id=record_data.participant_id,
            profile_snapshot=record_data.profile_snapshot,
            is_fallback=record_data.is_fallback,
            attempts=record_data.attempts,
            assigned_at=datetime.utcnow(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(record)
                self.session.flush()
            return record
        except IntegrityError:
            logger.info(f"Identifier already reserved: {record_data.identifier}")
            return None
        except SQLAlchemyError as e:
            raise self._fail("reserving", e) from e

    def get_by_identifier(self, identifier: str) -> IdentifierRecord | None:
        """Get a record by identifier value."""
        try:
            return (
                self.session.query(IdentifierRecord)
                .filter(IdentifierRecord.identifier == identifier)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("getting", e) from e

    def is_reserved(self, identifier: str) -> bool:
        """Check whether the identifier exists in the historical table."""
        return self.get_by_identifier(identifier) is not None

    def get_by_participant(
        self, participant_id: str, group_id: str | None = None
    ) -> list[IdentifierRecord]:
        """All identifiers ever reserved for a participant."""
        try:
            query = self.session.query(IdentifierRecord).filter(
                IdentifierRecord.participant_id == participant_id
            )
            if group_id:
                query = query.filter(IdentifierRecord.group_id == group_id)
            return query.order_by(desc(IdentifierRecord.assigned_at)).all()
        except SQLAlchemyError as e:
            raise self._fail("listing participant", e) from e

    def list_identifiers(self, group_id: str | None = None) -> list[str]:
        """Identifier values, optionally limited to one group."""
        try:
            query = self.session.query(IdentifierRecord.identifier)
            if group_id:
                query = query.filter(IdentifierRecord.group_id == group_id)
            return [row[0] for row in query.all()]
        except SQLAlchemyError as e:
            raise self._fail("listing", e) from e

    def count_fallbacks(self, group_id: str | None = None) -> int:
        """Number of out-of-space fallback reservations."""
        try:
            query = self.session.query(IdentifierRecord).filter(IdentifierRecord.is_fallback.is_(True))
            if group_id:
                query = query.filter(IdentifierRecord.group_id == group_id)
            return query.count()
        except SQLAlchemyError as e:
            raise self._fail("counting fallbacks", e) from e

    def last_assignment(self, group_id: str | None = None) -> datetime | None:
        """Timestamp of the newest reservation."""
        try:
            query = self.session.query(func.max(IdentifierRecord.assigned_at))
            if group_id:
                query = query.filter(IdentifierRecord.group_id == group_id)
            return query.scalar()
        except SQLAlchemyError as e:
            raise self._fail("reading last assignment", e) from e


class OperatorEventRepository(BaseRepository):
    """Repository for OperatorEvent entities."""

    def __init__(self, session: Session):
        super().__init__(session, OperatorEvent)

    def create(self, event_data: OperatorEventCreate) -> OperatorEvent:
        """Create new operator event."""
        try:
            event = OperatorEvent(
                event_type=event_data.event_type,
                severity=event_data.severity,
                message=event_data.message,
                participant_id=event_data.participant_id,
                group_id=event_data.group_id,
                context=event_data.context,
                created_at=datetime.utcnow(),
            )
            self.session.add(event)
            self.session.flush()
            return event
        except SQLAlchemyError as e:
            raise self._fail("creating", e) from e

    def list_recent(
        self,
        group_id: str | None = None,
        limit: int = 20,
        event_type: str | None = None,
    ) -> list[OperatorEvent]:
        """Newest events first."""
        try:
            query = self.session.query(OperatorEvent)
            if group_id:
                query = query.filter(OperatorEvent.group_id == group_id)
            if event_type:
                query = query.filter(OperatorEvent.event_type == event_type)
            return query.order_by(desc(OperatorEvent.created_at)).limit(limit).all()
        except SQLAlchemyError as e:
            raise self._fail("listing", e) from e

    def count_by_type(self, group_id: str | None = None) -> dict[str, int]:
        """Event counts grouped by type."""
        try:
            query = self.session.query(OperatorEvent.event_type, func.count(OperatorEvent.id))
            if group_id:
                query = query.filter(OperatorEvent.group_id == group_id)
            return {event_type: count for event_type, count in query.group_by(OperatorEvent.event_type).all()}
        except SQLAlchemyError as e:
            raise self._fail("counting", e) from e
