"""
Pytest configuration and fixtures for designation protocol tests.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

# Add project root to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from config.config import Config, FeatureFlags
from src.data.database_factory import create_db_engine, make_session_scope
from src.data.models import Base
from src.logic.protection_ledger import ProtectionLedger
from tests.factories.identity_factories import FakeTransport


@pytest.fixture
def test_config():
    """Provide a test configuration instance."""
    config = Config()
    config.environment = "testing"
    config.debug = True
    config.database.dsn = "sqlite://"
    config.protection.oracle_timeout_seconds = 0.5
    config.protection.mutation_timeout_seconds = 0.5
    config.persistence.rehydrate_ledger_on_start = False
    config.feature_flags = FeatureFlags()
    return config


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_db_engine(tmp_path):
    """File-backed SQLite engine; sessions get their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'designation.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_scope(file_db_engine):
    return make_session_scope(sessionmaker(bind=file_db_engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session_scope(session_factory):
    """Transactional scope bound to the in-memory database."""
    return make_session_scope(session_factory)


@pytest.fixture
def db_session(session_factory):
    """Plain session for repository tests; rolled back afterwards."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def ledger():
    return ProtectionLedger()


@pytest.fixture
def transport():
    return FakeTransport()
