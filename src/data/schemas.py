"""
Pydantic schemas for data validation and serialization.
Provides validation models for interview answers, identifier records, and operator reports.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, conint, constr, field_validator

from .models import AnswerChoice, InterviewStage, OperatorEventSeverity


# Base schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )


# Interview schemas
class AnswerRecord(BaseSchema):
    """One recorded multiple-choice answer."""

    question_index: conint(ge=0)
    choice: AnswerChoice
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_json(self) -> dict[str, Any]:
        """Serialize for storage in a JSON column."""
        return {
            "question_index": self.question_index,
            "choice": self.choice,
            "timestamp": self.timestamp.isoformat(),
        }


class InterviewSessionSummary(BaseSchema):
    """Operator view of an interview session."""

    id: UUID
    participant_id: str
    group_id: str
    stage: InterviewStage
    question_index: int
    trait_scores: dict[str, int] = Field(default_factory=dict)
    trigger_response: str | None = None
    assigned_identifier: str | None = None
    is_alternate_path: bool = False
    delivery_failed: bool = False
    is_forced: bool = False
    close_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class InterviewStats(BaseSchema):
    """Aggregate interview statistics."""

    total_sessions: int = 0
    completed: int = 0
    in_progress: int = 0
    delivery_failed: int = 0
    alternate_path: int = 0
    reset: int = 0
    completion_rate: float = 0.0


# Identifier schemas
class IdentifierRecordCreate(BaseSchema):
    """Identifier reservation request."""

    identifier: constr(min_length=1, max_length=100)
    group_id: constr(min_length=1, max_length=64)
    participant_id: constr(min_length=1, max_length=64) | None = None
    profile_snapshot: dict[str, Any] = Field(default_factory=dict)
    is_fallback: bool = False
    attempts: conint(ge=1) = 1

    @field_validator("identifier")
    @classmethod
    def validate_identifier(cls, v):
        """Reject blank or padded identifiers."""
        if v != v.strip() or not v.strip():
            raise ValueError("Identifier must not be blank or padded with whitespace")
        return v


class IdentifierRecordResponse(BaseSchema):
    """Identifier record response schema."""

    id: UUID
    identifier: str
    group_id: str
    participant_id: str | None = None
    is_fallback: bool = False
    attempts: int = 1
    assigned_at: datetime | None = None


class IdentifierDecoding(BaseSchema):
    """Decoded identifier fields."""

    identifier: str
    is_systematic: bool
    is_fallback: bool = False
    classification: str | None = None
    classification_meaning: str | None = None
    slot: str | None = None
    descriptor: str | None = None
    marker: str | None = None


class AssignmentStats(BaseSchema):
    """Identifier space utilization."""

    total_assigned: int
    total_space: int
    remaining: int
    utilization_percent: float
    fallback_count: int = 0
    classifications_used: int = 0
    slots_used: int = 0
    descriptors_used: int = 0
    markers_used: int = 0
    last_assignment: datetime | None = None


# Operator event schemas
class OperatorEventCreate(BaseSchema):
    """Operator event creation schema."""

    event_type: constr(min_length=1, max_length=64)
    severity: OperatorEventSeverity = OperatorEventSeverity.INFO
    message: constr(min_length=1)
    participant_id: str | None = None
    group_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class OperatorEventResponse(OperatorEventCreate):
    """Operator event response schema."""

    id: UUID
    created_at: datetime | None = None
