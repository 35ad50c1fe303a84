"""
Interview service.
Owns database sessions and collaborator calls around the interview logic:
typed events come in, one transaction runs per event, and completed
identifiers are applied through the transport and protected in the ledger.
"""

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from config.config import IdentifierConfig, InterviewConfig
from src.data.database_factory import SessionScope, get_session
from src.data.models import (
    AnswerChoice,
    InterviewSessionRecord,
    InterviewStage,
    OperatorEventSeverity,
    ProtectionSource,
)
from src.data.repositories import IdentifierRecordRepository, InterviewSessionRepository
from src.data.schemas import InterviewSessionSummary
from src.exceptions import DeliveryError, InvalidInputError, SessionNotFoundError
from src.logic.identifier_space import IdentifierSpaceGenerator
from src.logic.interview_events import (
    AnswerReceived,
    BeginRequested,
    FreeTextField,
    FreeTextReceived,
    InterviewEvent,
    ObserverNameAccepted,
    StartAcknowledged,
)
from src.logic.interview_logic import (
    STANDARD_QUESTIONS,
    InterviewLogic,
    Question,
    is_ready_to_complete,
    suggest_observer_name,
)
from src.logic.protection_ledger import ProtectionLedger
from src.services.interfaces import NotificationSink, Transport
from src.utils.identity_error_handler import (
    ErrorContext,
    IdentityErrorCategory,
    IdentityErrorHandler,
)
from src.utils.logging import context_fields

logger = logging.getLogger(__name__)

BEGIN_CHOICE = "begin"
ANSWER_CHOICES = tuple(choice.value for choice in AnswerChoice)

OPENING_MESSAGE = "A short assessment is required before you receive your designation."
OBSERVER_NAMING_PROMPT = (
    "Observer status recognized. Accept the designation **{suggestion}** "
    "or reply with a name of your own."
)
CUSTOM_NAME_CHOICE = "custom"
ASSIGNMENT_MESSAGE = "Assessment complete. Your designation is **{identifier}**."
APPLY_REASON = "Designation assigned"


@dataclass
class InterviewOutcome:
    """State of a session after one event was handled."""

    participant_id: str
    group_id: str
    session_id: UUID | None
    stage: InterviewStage
    question_index: int = 0
    assigned_identifier: str | None = None
    is_alternate_path: bool = False
    delivery_failed: bool = False
    applied: bool | None = None
    protected: bool = False
    next_question: Question | None = None

    @property
    def completed(self) -> bool:
        return self.stage == InterviewStage.COMPLETED


def _outcome(session: InterviewSessionRecord) -> InterviewOutcome:
    return InterviewOutcome(
        participant_id=session.participant_id,
        group_id=session.group_id,
        session_id=session.id,
        stage=InterviewStage(session.stage),
        question_index=session.question_index,
        assigned_identifier=session.assigned_identifier,
        is_alternate_path=session.is_alternate_path,
        delivery_failed=session.delivery_failed,
        next_question=InterviewLogic.next_question(session),
    )


class InterviewService:
    """Event-driven interview flow with per-participant serialization."""

    def __init__(
        self,
        transport: Transport,
        ledger: ProtectionLedger,
        notifier: NotificationSink,
        session_scope: SessionScope | None = None,
        interview_config: InterviewConfig | None = None,
        identifier_config: IdentifierConfig | None = None,
        error_handler: IdentityErrorHandler | None = None,
        alternate_path_enabled: bool = True,
        rng: random.Random | None = None,
    ):
        self.transport = transport
        self.ledger = ledger
        self.notifier = notifier
        self.session_scope = session_scope or get_session
        self.interview_config = interview_config or InterviewConfig()
        self.identifier_config = identifier_config or IdentifierConfig()
        self.error_handler = error_handler or IdentityErrorHandler()
        self.alternate_path_enabled = alternate_path_enabled
        self.rng = rng or random.Random()

        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._global_lock = threading.Lock()
        self._handlers: dict[type, Callable[..., InterviewOutcome]] = {
            BeginRequested: self._on_begin,
            StartAcknowledged: self._on_start_acknowledged,
            FreeTextReceived: self._on_free_text,
            ObserverNameAccepted: self._on_observer_name_accepted,
            AnswerReceived: self._on_answer,
        }

    def _lock_for(self, participant_id: str, group_id: str) -> threading.Lock:
        key = (participant_id, group_id)
        with self._global_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _logic(self, session: Session) -> InterviewLogic:
        generator = IdentifierSpaceGenerator(
            IdentifierRecordRepository(session), self.identifier_config, rng=self.rng
        )
        return InterviewLogic(
            InterviewSessionRepository(session),
            generator,
            self.interview_config,
            alternate_path_enabled=self.alternate_path_enabled,
        )

    def handle(self, event: InterviewEvent) -> InterviewOutcome:
        """
        Dispatch one typed event.

        Raises:
            DuplicateSessionError, DuplicateAnswerError, InvalidTransitionError,
            SessionNotFoundError, IdentifierConflictError: rejected events
            DatabaseError: If storage is unavailable
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise InvalidInputError("event", type(event).__name__, "unsupported interview event")
        with self._lock_for(event.participant_id, event.group_id):
            with self._storage_boundary(event.participant_id, event.group_id, type(event).__name__):
                return handler(event)

    def _storage_boundary(self, participant_id: str, group_id: str, operation: str):
        return self.error_handler.error_boundary(
            IdentityErrorCategory.DATABASE_OPERATION,
            ErrorContext(
                participant_id=participant_id,
                group_id=group_id,
                operation=operation,
                component="interview_service",
            ),
        )

    # Event handlers
    # Operator events are reported after the transaction closes so they never
    # share a connection with the session they describe.

    def _on_begin(self, event: BeginRequested) -> InterviewOutcome:
        with self.session_scope() as db:
            logic = self._logic(db)
            session = logic.begin(
                event.participant_id,
                event.group_id,
                forced=event.forced,
                requested_by=event.requested_by,
            )
            delivered = self._deliver(event.participant_id, OPENING_MESSAGE, (BEGIN_CHOICE,))
            if not delivered:
                logic.mark_delivery_failed(session)
            outcome = _outcome(session)
        if not delivered:
            self._report_delivery_failure(outcome)
        return outcome

    def _on_start_acknowledged(self, event: StartAcknowledged) -> InterviewOutcome:
        with self.session_scope() as db:
            logic = self._logic(db)
            session = logic.acknowledge_start(event.participant_id, event.group_id)
            delivered = self._send_next_prompt(logic, session)
            outcome = _outcome(session)
        if not delivered:
            self._report_delivery_failure(outcome)
        return outcome

    def _on_free_text(self, event: FreeTextReceived) -> InterviewOutcome:
        if event.field == FreeTextField.OBSERVER_LABEL:
            return self._on_observer_label(event)

        with self.session_scope() as db:
            logic = self._logic(db)
            session = logic.record_trigger_response(event.participant_id, event.group_id, event.text)
            delivered = self._send_next_prompt(logic, session)
            outcome = _outcome(session)
        if not delivered:
            self._report_delivery_failure(outcome)
        return outcome

    def _on_observer_label(self, event: FreeTextReceived) -> InterviewOutcome:
        displayed = self.transport.displayed_identifiers(event.group_id)
        with self.session_scope() as db:
            session = self._logic(db).complete_alternate(
                event.participant_id, event.group_id, event.text, displayed
            )
            outcome = _outcome(session)
        return self._apply_and_protect(outcome)

    def _on_observer_name_accepted(self, event: ObserverNameAccepted) -> InterviewOutcome:
        displayed = self.transport.displayed_identifiers(event.group_id)
        with self.session_scope() as db:
            session = self._logic(db).accept_generated_observer_name(
                event.participant_id, event.group_id, event.name, displayed
            )
            outcome = _outcome(session)
        return self._apply_and_protect(outcome)

    def _on_answer(self, event: AnswerReceived) -> InterviewOutcome:
        displayed: set[str] = set()
        if event.question_index == len(STANDARD_QUESTIONS) - 1:
            displayed = self.transport.displayed_identifiers(event.group_id)

        delivered = True
        with self.session_scope() as db:
            logic = self._logic(db)
            session = logic.record_answer(
                event.participant_id, event.group_id, event.question_index, event.choice
            )
            if is_ready_to_complete(session):
                session = logic.complete(session, displayed)
            else:
                delivered = self._send_next_prompt(logic, session)
            outcome = _outcome(session)

        if not delivered:
            self._report_delivery_failure(outcome)
        if outcome.completed:
            return self._apply_and_protect(outcome)
        return outcome

    # Explicit operations

    def complete(self, participant_id: str, group_id: str) -> InterviewOutcome:
        """
        Run the completion transition for the pair's latest session.

        A session that already holds an identifier is returned unchanged and
        nothing new is reserved or applied.
        """
        with self._lock_for(participant_id, group_id):
            displayed = self.transport.displayed_identifiers(group_id)
            with self._storage_boundary(participant_id, group_id, "complete"):
                with self.session_scope() as db:
                    repository = InterviewSessionRepository(db)
                    session = repository.get_open_session(
                        participant_id, group_id
                    ) or repository.get_latest(participant_id, group_id)
                    if session is None:
                        raise SessionNotFoundError(participant_id, group_id)
                    already_assigned = bool(session.assigned_identifier)
                    session = self._logic(db).complete(session, displayed)
                    outcome = _outcome(session)
            if already_assigned:
                return outcome
            return self._apply_and_protect(outcome)

    def reset(self, participant_id: str, group_id: str) -> int:
        """Close open sessions of the pair without an identifier."""
        with self._lock_for(participant_id, group_id):
            with self._storage_boundary(participant_id, group_id, "reset"):
                with self.session_scope() as db:
                    return self._logic(db).reset(participant_id, group_id)

    def get_status(self, participant_id: str, group_id: str) -> InterviewSessionSummary | None:
        with self._storage_boundary(participant_id, group_id, "get_status"):
            with self.session_scope() as db:
                session = InterviewSessionRepository(db).get_latest(participant_id, group_id)
                return InterviewSessionSummary.model_validate(session) if session else None

    # Collaborator helpers

    def _deliver(self, participant_id: str, content: str, choices: tuple[str, ...] = ()) -> bool:
        try:
            return bool(self.transport.send_interactive_message(participant_id, content, choices))
        except Exception as e:
            logger.warning(f"Message to {participant_id} failed: {e}")
            return False

    def _send_next_prompt(self, logic: InterviewLogic, session: InterviewSessionRecord) -> bool:
        """Send the prompt for the session's stage; a failed delivery is marked on the session."""
        if session.stage == InterviewStage.OBSERVER_NAMING.value:
            suggestion = suggest_observer_name(self.rng, self.interview_config.alternate_prefix)
            content = OBSERVER_NAMING_PROMPT.format(suggestion=suggestion)
            choices = (suggestion, CUSTOM_NAME_CHOICE)
        else:
            question = logic.next_question(session)
            if question is None:
                return True
            choices = () if question.bucket is None else ANSWER_CHOICES
            content = question.text
        if self._deliver(session.participant_id, content, choices):
            return True
        logic.mark_delivery_failed(session)
        return False

    def _report_delivery_failure(self, outcome: InterviewOutcome) -> None:
        context = ErrorContext(
            participant_id=outcome.participant_id,
            group_id=outcome.group_id,
            session_id=str(outcome.session_id),
            operation="send_interactive_message",
            component="interview_service",
        )
        recovery = self.error_handler.handle_delivery_error(
            DeliveryError(outcome.participant_id, "outbound channel could not be opened"), context
        )
        self.notifier.log_operator_event(
            OperatorEventSeverity.WARNING,
            f"Could not reach participant {outcome.participant_id}; "
            f"interview waits in stage '{outcome.stage.value}'",
            {**context.as_log_context(), "suggestions": recovery.recovery_suggestions},
            event_type="delivery_failed",
        )

    def _apply_and_protect(self, outcome: InterviewOutcome) -> InterviewOutcome:
        """Apply the assigned identifier and, once accepted, protect it."""
        identifier = outcome.assigned_identifier
        try:
            applied = bool(
                self.transport.apply_display_identifier(
                    outcome.participant_id, outcome.group_id, identifier, APPLY_REASON
                )
            )
        except Exception as e:
            logger.error(f"Applying {identifier!r} to {outcome.participant_id} failed: {e}")
            applied = False

        outcome.applied = applied
        if not applied:
            self.notifier.log_operator_event(
                OperatorEventSeverity.HIGH,
                f"Identifier {identifier!r} could not be applied to {outcome.participant_id}; "
                f"protection not enabled",
                {
                    "participant_id": outcome.participant_id,
                    "group_id": outcome.group_id,
                    "identifier": identifier,
                    "session_id": str(outcome.session_id),
                },
                event_type="apply_failed",
            )
            return outcome

        self.ledger.protect(
            outcome.participant_id, outcome.group_id, identifier, ProtectionSource.INTERVIEW_ASSIGNMENT
        )
        outcome.protected = True
        logger.info(
            f"Identifier {identifier} applied and protected",
            **context_fields(outcome.participant_id, outcome.group_id, "identifier_assigned"),
        )
        self._deliver(outcome.participant_id, ASSIGNMENT_MESSAGE.format(identifier=identifier))
        return outcome
