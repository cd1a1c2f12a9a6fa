"""
Pytest configuration and fixtures.

The database URL and scheduler switches are set before tokoreg is imported, because the
engine and settings are built at import time.
"""
import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="tokoreg-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["APP_ENV"] = "development"
os.environ["REAPER_ENABLED"] = "false"
os.environ["ARCHIVAL_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["PIN_BCRYPT_ROUNDS"] = "4"
os.environ["FRONTEND_URL"] = "https://daftar.example.com"
os.environ["CHAT_BOT_NUMBER"] = "6281100000000"
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["TWILIO_WHATSAPP_FROM"] = ""

import pytest
from fastapi.testclient import TestClient

from tokoreg.database import Base, SessionLocal, engine, get_db
from tokoreg.dependencies import get_chat_transport
from tokoreg.main import app
from tokoreg.models.one_time_code import CodeStatus, OneTimeCode
from tokoreg.services.auth import hash_pin
from tokoreg.services.transport import ConsoleChatTransport

PHONE = "081234567890"
IDENTITY = "6281234567890"
OTHER_IDENTITY = "6285711112222"


@pytest.fixture
def db_session():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Factory for extra, independent DB sessions (a second instance, a background job)."""
    return SessionLocal


@pytest.fixture
def transport():
    return ConsoleChatTransport()


@pytest.fixture
def client(db_session, transport):
    """Test client with a per-request DB session and the recording chat transport."""
    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_transport] = lambda: transport
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def pending_code(db_session):
    """Read the identity's current pending code straight from the store."""
    def _read(identity: str = IDENTITY) -> str | None:
        db_session.expire_all()
        row = (
            db_session.query(OneTimeCode)
            .filter(OneTimeCode.identity == identity, OneTimeCode.status == CodeStatus.pending.value)
            .first()
        )
        return row.code if row else None
    return _read


@pytest.fixture(scope="session")
def pin_hash():
    return hash_pin("112233")


@pytest.fixture
def complete_fields(pin_hash):
    return {"store_name": "Warung Berkah", "owner_name": "Siti Aminah", "pin_hash": pin_hash}


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "unit: mark test as unit test")
