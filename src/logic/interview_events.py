"""
Typed interview events.

The transport layer decodes platform interactions into these values; the
interview service dispatches on the event class, never on string prefixes.
"""

from dataclasses import dataclass
from enum import Enum

from src.data.models import AnswerChoice


class FreeTextField(str, Enum):
    """Which free-text prompt a reply belongs to."""

    TRIGGER_RESPONSE = "trigger_response"
    OBSERVER_LABEL = "observer_label"


@dataclass(frozen=True)
class BeginRequested:
    """A participant arrived, or an operator force-started the interview."""

    participant_id: str
    group_id: str
    forced: bool = False
    requested_by: str | None = None


@dataclass(frozen=True)
class StartAcknowledged:
    """The participant accepted the opening message."""

    participant_id: str
    group_id: str


@dataclass(frozen=True)
class FreeTextReceived:
    participant_id: str
    group_id: str
    field: FreeTextField
    text: str


@dataclass(frozen=True)
class ObserverNameAccepted:
    """The participant took the offered observer designation instead of a custom one."""

    participant_id: str
    group_id: str
    name: str


@dataclass(frozen=True)
class AnswerReceived:
    participant_id: str
    group_id: str
    question_index: int
    choice: AnswerChoice


InterviewEvent = (
    BeginRequested | StartAcknowledged | FreeTextReceived | ObserverNameAccepted | AnswerReceived
)
