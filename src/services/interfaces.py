"""
Collaborator interfaces consumed by the identity subsystem.
Transport, authorization oracle and notification sink implementations live
outside this package; the core only talks to these abstractions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from src.data.models import OperatorEventSeverity


class PrivilegeLevel(str, Enum):
    """Privilege of the actor behind an identity change."""

    SYSTEM = "system"
    OWNER = "owner"
    ELEVATED = "elevated"
    ORDINARY = "ordinary"


class ChangeKind(str, Enum):
    """Record types the oracle can be asked about."""

    DISPLAY_IDENTIFIER = "display_identifier"


AUTHORIZED_PRIVILEGES = frozenset({PrivilegeLevel.SYSTEM, PrivilegeLevel.OWNER, PrivilegeLevel.ELEVATED})


@dataclass(frozen=True)
class ActorAttribution:
    """Who made the most recent change, per the oracle."""

    actor_id: str
    privilege_level: PrivilegeLevel

    @property
    def is_authorized(self) -> bool:
        return self.privilege_level in AUTHORIZED_PRIVILEGES


class Transport(ABC):
    """Message delivery and display-identifier mutation."""

    @abstractmethod
    def send_interactive_message(
        self, participant_id: str, content: str, choices: Sequence[str] = ()
    ) -> bool:
        """
        Send a message to a participant.

        Returns:
            bool: True when the message was delivered
        """

    @abstractmethod
    def apply_display_identifier(
        self, participant_id: str, group_id: str, value: str, reason: str
    ) -> bool:
        """
        Set the participant's displayed identifier in a group.

        Returns:
            bool: True when the platform accepted the change
        """

    @abstractmethod
    def displayed_identifiers(self, group_id: str) -> set[str]:
        """Identifiers currently displayed by members of the group."""


class AuthorizationOracle(ABC):
    """Attribution of recent identity changes."""

    @abstractmethod
    def recent_actor_for(
        self,
        participant_id: str,
        group_id: str,
        change_kind: ChangeKind,
        window_seconds: int,
    ) -> ActorAttribution | None:
        """Most recent attributable actor within the window, or None."""


class NotificationSink(ABC):
    """Participant notices and operator-visible events."""

    @abstractmethod
    def warn_participant(self, participant_id: str, message: str) -> bool:
        """Send a one-way notice to a participant."""

    @abstractmethod
    def log_operator_event(
        self,
        severity: OperatorEventSeverity,
        message: str,
        context: dict[str, Any] | None = None,
        event_type: str = "general",
    ) -> None:
        """Record an event for operators."""
