"""
Pytest configuration and fixtures for run club tests.
"""

import time

import pytest

from runclub.database import create_db_engine, create_session_factory, init_db
from runclub.schemas.credential import Credential
from runclub.services.encryption import CredentialCipher
from runclub.services.legacy_store import LegacyFlatStore
from runclub.services.member_store import MemberStore
from runclub.services.migration import MigrationLedger


# Configure pytest-asyncio for async tests
pytest_plugins = ('pytest_asyncio',)


@pytest.fixture
def engine():
    """In-memory SQLite engine with the full schema, fresh per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def encryption_key():
    """Generate a valid 32-byte hex key for testing."""
    return CredentialCipher.generate_key()


@pytest.fixture
def cipher(encryption_key):
    return CredentialCipher(encryption_key)


@pytest.fixture
def member_store(session_factory, cipher):
    return MemberStore(session_factory, cipher)


@pytest.fixture
def ledger(session_factory):
    return MigrationLedger(session_factory)


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "members.json"


@pytest.fixture
def legacy_store(snapshot_path, cipher):
    return LegacyFlatStore(snapshot_path, cipher)


@pytest.fixture
def valid_credential():
    """Credential that stays valid well past the refresh margin."""
    return Credential(
        access_token="access-valid",
        refresh_token="refresh-valid",
        expires_at=int(time.time()) + 6 * 3600,
    )


@pytest.fixture
def expired_credential():
    return Credential(
        access_token="access-old",
        refresh_token="refresh-old",
        expires_at=int(time.time()) - 60,
    )


@pytest.fixture
def athlete_profile():
    return {"id": 555, "firstname": "Jane", "lastname": "Runner", "city": "Boulder"}
