"""
Tests for concurrent use of a file-backed SQLite database.
Interviews and reservations run in parallel transactions on separate connections.
"""

import threading
from unittest.mock import Mock, patch

from sqlalchemy.pool import NullPool, StaticPool

from config.config import IdentifierConfig
from src.data.database_factory import create_db_engine, is_sqlite_memory
from src.data.models import AnswerChoice, IdentifierRecord, InterviewStage
from src.data.repositories import IdentifierRecordRepository
from src.logic.identifier_space import IdentifierSpaceGenerator
from src.logic.interview_events import (
    AnswerReceived,
    BeginRequested,
    FreeTextField,
    FreeTextReceived,
    StartAcknowledged,
)
from src.logic.protection_ledger import ProtectionLedger
from src.services.interview_service import InterviewService
from tests.factories.identity_factories import FakeTransport

G = "group-1"
PROFILE = {"isolated": 4, "seeker": 4, "aware": 2, "lost": 0}
FIRST_CANDIDATE = "TEST-G3-PATTERN-⋗"
SECOND_CANDIDATE = "SPEC-H5-CLEAR-∃"


def _run_threads(target, count):
    errors: list[Exception] = []

    def guarded(index):
        try:
            target(index)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=guarded, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return errors


class TestEngineSelection:
    """Test cases for SQLite pool selection."""

    def test_memory_dsn_detection(self):
        assert is_sqlite_memory("sqlite://")
        assert is_sqlite_memory("sqlite:///:memory:")
        assert not is_sqlite_memory("sqlite:///data/designation.db")
        assert not is_sqlite_memory("postgresql://user@localhost/db")

    def test_memory_database_shares_one_connection(self):
        engine = create_db_engine("sqlite://")

        assert isinstance(engine.pool, StaticPool)
        engine.dispose()

    def test_file_database_opens_connection_per_session(self, file_db_engine):
        assert isinstance(file_db_engine.pool, NullPool)


class TestConcurrentReservations:
    """Test cases for reservations racing in separate transactions."""

    def _generate(self, file_session_scope, participant_id):
        with file_session_scope() as db:
            generator = IdentifierSpaceGenerator(IdentifierRecordRepository(db), IdentifierConfig())
            return generator.generate(PROFILE, G, participant_id)

    def test_two_transactions_race_for_first_candidate(self, file_session_scope):
        # Arrange
        start = threading.Barrier(2)
        results: dict[int, str] = {}

        def reserve(index):
            start.wait(timeout=10)
            results[index] = self._generate(file_session_scope, f"p{index}").identifier

        # Act
        errors = _run_threads(reserve, 2)

        # Assert
        assert errors == []
        assert set(results.values()) == {FIRST_CANDIDATE, SECOND_CANDIDATE}
        with file_session_scope() as db:
            assert db.query(IdentifierRecord).count() == 2

    def test_stale_availability_check_falls_through_constraint(self, file_session_scope):
        # Arrange
        first = self._generate(file_session_scope, "p1")

        # Act
        with file_session_scope() as db:
            repository = IdentifierRecordRepository(db)
            insert = Mock(wraps=repository.insert_if_absent)
            repository.insert_if_absent = insert
            generator = IdentifierSpaceGenerator(repository, IdentifierConfig())
            with patch.object(IdentifierSpaceGenerator, "is_available", return_value=True):
                second = generator.generate(PROFILE, G, "p2")
            # The transaction survives the rejected insert
            reserved = sorted(r.identifier for r in db.query(IdentifierRecord).all())

        # Assert
        assert first.identifier == FIRST_CANDIDATE
        assert second.identifier == SECOND_CANDIDATE
        assert second.attempts == 2
        assert insert.call_count == 2
        assert insert.call_args_list[0].args[0].identifier == FIRST_CANDIDATE
        assert reserved == sorted([FIRST_CANDIDATE, SECOND_CANDIDATE])
        with file_session_scope() as db:
            assert db.query(IdentifierRecord).count() == 2


class TestConcurrentInterviews:
    """Test cases for parallel interviews against one database file."""

    def test_parallel_interviews_complete_with_unique_identifiers(self, file_session_scope):
        # Arrange
        transport = FakeTransport()
        ledger = ProtectionLedger()
        service = InterviewService(transport, ledger, Mock(), session_scope=file_session_scope)
        answers = [AnswerChoice.YES] * 5 + [AnswerChoice.NO] * 3
        outcomes = {}

        def interview(index):
            participant_id = f"p{index}"
            service.handle(BeginRequested(participant_id, G))
            service.handle(StartAcknowledged(participant_id, G))
            service.handle(
                FreeTextReceived(participant_id, G, FreeTextField.TRIGGER_RESPONSE, "blue")
            )
            for question_index, choice in enumerate(answers):
                outcome = service.handle(AnswerReceived(participant_id, G, question_index, choice))
            outcomes[participant_id] = outcome

        # Act
        errors = _run_threads(interview, 8)

        # Assert
        assert errors == []
        assert len(outcomes) == 8
        assert all(o.stage == InterviewStage.COMPLETED for o in outcomes.values())
        identifiers = [o.assigned_identifier for o in outcomes.values()]
        assert len(set(identifiers)) == 8
        assert FIRST_CANDIDATE in identifiers
        assert SECOND_CANDIDATE in identifiers
        with file_session_scope() as db:
            assert db.query(IdentifierRecord).count() == 8
