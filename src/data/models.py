"""
Database models for the designation protocol.
Defines SQLAlchemy models for interview sessions, reserved identifiers, and operator events.
"""

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import declarative_base, validates
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


# Database-agnostic JSON column type
class JSONColumn(TypeDecorator):
    """JSON column that uses JSONB for PostgreSQL and JSON for other databases."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class Trait(str, Enum):
    """Behavioral trait buckets scored by the interview."""

    SEEKER = "seeker"
    ISOLATED = "isolated"
    AWARE = "aware"
    LOST = "lost"


class InterviewStage(str, Enum):
    """Interview stage enumeration."""

    INITIATED = "initiated"
    AWAITING_TRIGGER_RESPONSE = "awaiting_trigger_response"
    STANDARD_QUESTIONING = "standard_questioning"
    OBSERVER_NAMING = "observer_naming"
    COMPLETED = "completed"


class AnswerChoice(str, Enum):
    """Multiple-choice answers for standard questions."""

    YES = "yes"
    MAYBE = "maybe"
    NO = "no"


class SessionCloseReason(str, Enum):
    """Why a session reached the completed stage."""

    ASSIGNED = "assigned"
    RESET = "reset"
    FORCED_RESTART = "forced_restart"


class ProtectionSource(str, Enum):
    """Origin of a protection entry."""

    INTERVIEW_ASSIGNMENT = "interview_assignment"
    ADMINISTRATIVE_OVERRIDE = "administrative_override"
    MANUAL_CURRENT_VALUE_LOCK = "manual_current_value_lock"


class OperatorEventSeverity(str, Enum):
    """Severity of operator-facing events."""

    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class InterviewSessionRecord(Base):
    """One participant's pass through the interview."""

    __tablename__ = "interview_sessions"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    participant_id = Column(String(64), nullable=False, index=True)
    group_id = Column(String(64), nullable=False, index=True)
    stage = Column(String(40), nullable=False, default=InterviewStage.INITIATED.value)
    question_index = Column(Integer, nullable=False, default=0)
    answers = Column(JSONColumn, nullable=False, default=list)
    trait_scores = Column(JSONColumn, nullable=False, default=dict)
    trigger_response = Column(Text, nullable=True)
    assigned_identifier = Column(String(100), nullable=True, index=True)
    is_alternate_path = Column(Boolean, nullable=False, default=False)
    delivery_failed = Column(Boolean, nullable=False, default=False)
    is_forced = Column(Boolean, nullable=False, default=False)
    requested_by = Column(String(64), nullable=True)
    close_reason = Column(String(30), nullable=True)
    started_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_interview_sessions_participant_group_stage", "participant_id", "group_id", "stage"),
        Index("idx_interview_sessions_started", "started_at"),
    )

    @validates("stage")
    def validate_stage(self, key, stage):
        """Validate interview stage."""
        if stage not in [s.value for s in InterviewStage]:
            raise ValueError(f"Invalid interview stage: {stage}")
        return stage

    @validates("close_reason")
    def validate_close_reason(self, key, reason):
        """Validate close reason."""
        if reason is not None and reason not in [r.value for r in SessionCloseReason]:
            raise ValueError(f"Invalid close reason: {reason}")
        return reason

    @property
    def is_open(self) -> bool:
        return self.stage != InterviewStage.COMPLETED.value

    def __repr__(self):
        return (
            f"<InterviewSessionRecord(id={self.id}, participant_id={self.participant_id}, "
            f"stage={self.stage})>"
        )


class IdentifierRecord(Base):
    """Permanently reserved identifier value."""

    __tablename__ = "identifier_records"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    identifier = Column(String(100), unique=True, nullable=False, index=True)
    group_id = Column(String(64), nullable=False, index=True)
    participant_id = Column(String(64), nullable=True, index=True)
    profile_snapshot = Column(JSONColumn, nullable=False, default=dict)
    is_fallback = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=1)
    assigned_at = Column(DateTime, nullable=False, default=func.now())

    def __repr__(self):
        return f"<IdentifierRecord(identifier={self.identifier}, group_id={self.group_id})>"


class OperatorEvent(Base):
    """Operator-visible audit trail entry."""

    __tablename__ = "operator_events"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default=OperatorEventSeverity.INFO.value)
    message = Column(Text, nullable=False)
    participant_id = Column(String(64), nullable=True, index=True)
    group_id = Column(String(64), nullable=True, index=True)
    context = Column(JSONColumn, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (Index("idx_operator_events_group_created", "group_id", "created_at"),)

    @validates("severity")
    def validate_severity(self, key, severity):
        """Validate event severity."""
        if severity not in [s.value for s in OperatorEventSeverity]:
            raise ValueError(f"Invalid operator event severity: {severity}")
        return severity

    def __repr__(self):
        return f"<OperatorEvent(event_type={self.event_type}, severity={self.severity})>"
