"""
Interview logic for the designation protocol.
Drives one participant through the trigger question, either the eight standard
questions or the observer naming branch, and hands the finished profile to the
identifier space generator.
"""

import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from config.config import InterviewConfig
from src.data.models import (
    AnswerChoice,
    InterviewSessionRecord,
    InterviewStage,
    SessionCloseReason,
    Trait,
)
from src.data.repositories import InterviewSessionRepository
from src.data.schemas import AnswerRecord
from src.exceptions import (
    DuplicateAnswerError,
    DuplicateSessionError,
    IdentifierConflictError,
    InvalidInputError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from src.logic.identifier_space import IdentifierSpaceGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Question:
    """One interview prompt."""

    index: int
    text: str
    category: str
    bucket: Trait | None = None


TRIGGER_QUESTION = Question(
    index=0,
    text="What is your favorite color? (Think carefully about your answer...)",
    category="trigger",
)

# Two consecutive questions feed each bucket, in this order
BUCKET_ORDER = (Trait.ISOLATED, Trait.SEEKER, Trait.AWARE, Trait.LOST)
QUESTIONS_PER_BUCKET = 2

_STANDARD_TEXTS = (
    ("existential", "Do you ever feel like you're the only real person in a world of NPCs?"),
    ("existential", "Have you ever had the unsettling feeling that reality is just a simulation?"),
    ("patterns", "Do you see patterns where others see coincidence?"),
    ("patterns", "Have you noticed the same numbers appearing everywhere in your life?"),
    ("isolation", "Do you prefer the quiet hours when most people are asleep?"),
    ("isolation", "Have you ever felt like you're watching life from outside, like through glass?"),
    ("awareness", "Have you ever felt like someone or something was trying to communicate with you?"),
    ("awareness", "Do you pay attention to things others dismiss as meaningless?"),
)

STANDARD_QUESTIONS = tuple(
    Question(
        index=i,
        text=text,
        category=category,
        bucket=BUCKET_ORDER[i // QUESTIONS_PER_BUCKET],
    )
    for i, (category, text) in enumerate(_STANDARD_TEXTS)
)

CHOICE_SCORES = {
    AnswerChoice.YES: 2,
    AnswerChoice.MAYBE: 1,
    AnswerChoice.NO: 0,
}

# Suffixes for system-offered observer designations
OBSERVER_DESCRIPTORS = ("Watching", "Seeing", "Knowing", "Waiting", "Recording", "Studying", "Analyzing")


def bucket_for_question(question_index: int) -> Trait:
    """Trait bucket fed by a standard question."""
    if not 0 <= question_index < len(STANDARD_QUESTIONS):
        raise InvalidInputError("question_index", question_index, "no such standard question")
    return STANDARD_QUESTIONS[question_index].bucket


def score_for_choice(choice: AnswerChoice | str) -> int:
    return CHOICE_SCORES[AnswerChoice(choice)]


def empty_trait_scores() -> dict[str, int]:
    return {trait.value: 0 for trait in BUCKET_ORDER}


def sanitize_observer_label(text: str | None, max_length: int = 20, placeholder: str = "UNNAMED") -> str:
    """
    Reduce free text to a safe label.

    Non-alphanumerics are dropped, whitespace runs become a single underscore,
    case is preserved and the result is truncated. An empty result becomes the
    placeholder.
    """
    cleaned = re.sub(r"[^a-zA-Z0-9\s]", "", text or "").strip()
    cleaned = re.sub(r"\s+", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    cleaned = cleaned[:max_length].strip("_")
    return cleaned or placeholder


def generated_observer_names(prefix: str = "Obs-") -> tuple[str, ...]:
    return tuple(f"{prefix}{descriptor}" for descriptor in OBSERVER_DESCRIPTORS)


def suggest_observer_name(rng: random.Random, prefix: str = "Obs-") -> str:
    """One system-offered observer designation, picked at random."""
    return f"{prefix}{rng.choice(OBSERVER_DESCRIPTORS)}"


def matches_reserved_keyword(text: str | None, keyword: str) -> bool:
    return (text or "").strip().lower() == keyword.strip().lower()


def has_answered(session: InterviewSessionRecord, question_index: int) -> bool:
    return any(a.get("question_index") == question_index for a in session.answers or [])


def is_ready_to_complete(session: InterviewSessionRecord) -> bool:
    return (
        session.stage == InterviewStage.STANDARD_QUESTIONING.value
        and session.question_index >= len(STANDARD_QUESTIONS)
    )


class InterviewLogic:
    """Interview state transitions over persisted sessions."""

    def __init__(
        self,
        session_repository: InterviewSessionRepository,
        generator: IdentifierSpaceGenerator,
        interview_config: InterviewConfig | None = None,
        alternate_path_enabled: bool = True,
    ):
        self.session_repository = session_repository
        self.generator = generator
        self.config = interview_config or InterviewConfig()
        self.alternate_path_enabled = alternate_path_enabled

    def _require_open(self, participant_id: str, group_id: str) -> InterviewSessionRecord:
        session = self.session_repository.get_open_session(participant_id, group_id)
        if session is None:
            raise SessionNotFoundError(participant_id, group_id)
        return session

    @staticmethod
    def _require_stage(session: InterviewSessionRecord, stage: InterviewStage, action: str) -> None:
        if session.stage != stage.value:
            raise InvalidTransitionError(session.stage, action)

    def begin(
        self,
        participant_id: str,
        group_id: str,
        forced: bool = False,
        requested_by: str | None = None,
    ) -> InterviewSessionRecord:
        """
        Create a session in the initiated stage.

        A forced begin closes any open session first; otherwise an open session
        for the pair is a conflict.

        Raises:
            DuplicateSessionError: If an open session exists and forced is False
        """
        if forced:
            closed = self.session_repository.close_open_sessions(
                participant_id, group_id, SessionCloseReason.FORCED_RESTART
            )
            if closed:
                logger.info(
                    f"Force restart closed {closed} open session(s) for {participant_id} in {group_id}"
                )
        else:
            existing = self.session_repository.get_open_session(participant_id, group_id)
            if existing is not None:
                raise DuplicateSessionError(participant_id, group_id, existing.id)

        session = self.session_repository.create(
            participant_id, group_id, is_forced=forced, requested_by=requested_by
        )
        logger.info(f"Interview started for {participant_id} in {group_id} (forced={forced})")
        return session

    def mark_delivery_failed(self, session: InterviewSessionRecord) -> InterviewSessionRecord:
        session.delivery_failed = True
        return self.session_repository.save(session)

    def acknowledge_start(self, participant_id: str, group_id: str) -> InterviewSessionRecord:
        """Initiated -> awaiting the trigger response."""
        session = self._require_open(participant_id, group_id)
        self._require_stage(session, InterviewStage.INITIATED, "acknowledge start")
        session.stage = InterviewStage.AWAITING_TRIGGER_RESPONSE.value
        session.delivery_failed = False
        return self.session_repository.save(session)

    def record_trigger_response(
        self, participant_id: str, group_id: str, text: str
    ) -> InterviewSessionRecord:
        """Store the first free-text answer and branch on the reserved keyword."""
        session = self._require_open(participant_id, group_id)
        self._require_stage(session, InterviewStage.AWAITING_TRIGGER_RESPONSE, "record trigger response")
        if session.trigger_response is not None:
            raise InvalidTransitionError(session.stage, "overwrite trigger response")

        session.trigger_response = text or ""
        alternate = self.alternate_path_enabled and matches_reserved_keyword(
            text, self.config.reserved_keyword
        )
        session.is_alternate_path = alternate
        if alternate:
            session.stage = InterviewStage.OBSERVER_NAMING.value
            logger.info(f"Participant {participant_id} entered the observer naming branch")
        else:
            session.stage = InterviewStage.STANDARD_QUESTIONING.value
            session.question_index = 0
            session.trait_scores = empty_trait_scores()
        return self.session_repository.save(session)

    def record_answer(
        self,
        participant_id: str,
        group_id: str,
        question_index: int,
        choice: AnswerChoice | str,
        answered_at: datetime | None = None,
    ) -> InterviewSessionRecord:
        """
        Score one standard answer and advance the question index.

        Raises:
            DuplicateAnswerError: If the question was already answered
            InvalidTransitionError: If the session is not questioning or the
                answer is for a question not asked yet
        """
        session = self._require_open(participant_id, group_id)
        self._require_stage(session, InterviewStage.STANDARD_QUESTIONING, "record answer")
        bucket = bucket_for_question(question_index)

        if has_answered(session, question_index):
            raise DuplicateAnswerError(question_index, session.id)
        if question_index != session.question_index:
            raise InvalidTransitionError(
                session.stage, f"answer question {question_index} before question {session.question_index}"
            )

        answer = AnswerRecord(
            question_index=question_index,
            choice=AnswerChoice(choice),
            timestamp=answered_at or datetime.utcnow(),
        )
        scores = dict(session.trait_scores or empty_trait_scores())
        scores[bucket.value] = scores.get(bucket.value, 0) + score_for_choice(choice)

        # JSON columns only track reassignment
        session.trait_scores = scores
        session.answers = [*(session.answers or []), answer.to_json()]
        session.question_index = question_index + 1
        return self.session_repository.save(session)

    def complete(
        self,
        session: InterviewSessionRecord,
        displayed_identifiers: Iterable[str] = (),
    ) -> InterviewSessionRecord:
        """
        Generate and record the systematic identifier.

        Completing an already completed session returns it unchanged.
        """
        if session.stage == InterviewStage.COMPLETED.value and session.assigned_identifier:
            logger.debug(f"Session {session.id} already completed with {session.assigned_identifier}")
            return session
        if not is_ready_to_complete(session):
            raise InvalidTransitionError(session.stage, "complete interview")

        generated = self.generator.generate(
            session.trait_scores,
            session.group_id,
            participant_id=session.participant_id,
            displayed_identifiers=displayed_identifiers,
            answers=session.answers,
        )
        return self._close_with_identifier(session, generated.identifier)

    def complete_alternate(
        self,
        participant_id: str,
        group_id: str,
        label: str,
        displayed_identifiers: Iterable[str] = (),
    ) -> InterviewSessionRecord:
        """
        Build the alternate-path identifier from a free-text label.

        Raises:
            IdentifierConflictError: If a group member already displays the value
        """
        session = self._require_open(participant_id, group_id)
        self._require_stage(session, InterviewStage.OBSERVER_NAMING, "record observer label")

        sanitized = sanitize_observer_label(
            label, self.config.max_label_length, self.config.label_placeholder
        )
        identifier = f"{self.config.alternate_prefix}{sanitized}"
        return self._close_alternate(session, identifier, displayed_identifiers)

    def accept_generated_observer_name(
        self,
        participant_id: str,
        group_id: str,
        name: str,
        displayed_identifiers: Iterable[str] = (),
    ) -> InterviewSessionRecord:
        """
        Complete the alternate path with a system-offered designation.

        Raises:
            InvalidInputError: If the name is not one the system offers
            IdentifierConflictError: If a group member already displays the value
        """
        session = self._require_open(participant_id, group_id)
        self._require_stage(session, InterviewStage.OBSERVER_NAMING, "accept observer name")

        if name not in generated_observer_names(self.config.alternate_prefix):
            raise InvalidInputError("name", name, "not an offered observer designation")
        return self._close_alternate(session, name, displayed_identifiers)

    def _close_alternate(
        self,
        session: InterviewSessionRecord,
        identifier: str,
        displayed_identifiers: Iterable[str],
    ) -> InterviewSessionRecord:
        if identifier in set(displayed_identifiers):
            logger.warning(f"Observer label {identifier} already displayed in {session.group_id}")
            raise IdentifierConflictError(identifier, session.group_id)
        return self._close_with_identifier(session, identifier)

    def _close_with_identifier(
        self, session: InterviewSessionRecord, identifier: str
    ) -> InterviewSessionRecord:
        session.assigned_identifier = identifier
        session.stage = InterviewStage.COMPLETED.value
        session.close_reason = SessionCloseReason.ASSIGNED.value
        session.completed_at = datetime.utcnow()
        logger.info(
            f"Interview completed for {session.participant_id} in {session.group_id}: {identifier}"
        )
        return self.session_repository.save(session)

    def reset(self, participant_id: str, group_id: str) -> int:
        """Close open sessions without an identifier so a new one may start."""
        closed = self.session_repository.close_open_sessions(
            participant_id, group_id, SessionCloseReason.RESET
        )
        logger.info(f"Reset closed {closed} session(s) for {participant_id} in {group_id}")
        return closed

    @staticmethod
    def next_question(session: InterviewSessionRecord) -> Question | None:
        """The prompt the participant should see next, if any."""
        if session.stage == InterviewStage.AWAITING_TRIGGER_RESPONSE.value:
            return TRIGGER_QUESTION
        if session.stage == InterviewStage.STANDARD_QUESTIONING.value and session.question_index < len(
            STANDARD_QUESTIONS
        ):
            return STANDARD_QUESTIONS[session.question_index]
        return None
