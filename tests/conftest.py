import os
import uuid
from pathlib import Path
from unittest.mock import MagicMock, patch

# Must be set before toolcredits.config is imported
TEST_DB = Path("./test_toolcredits.db")
if TEST_DB.exists():
    TEST_DB.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-length-1234")
os.environ.setdefault("SERVICE_KEY", "test-service-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from toolcredits.auth import create_access_token
from toolcredits.config import settings as _settings
from toolcredits.db import Base, engine, SessionLocal
from toolcredits.main import app
from toolcredits.models import User
from toolcredits.services.credits import create_profile

@pytest.fixture(scope="session", autouse=True)
def create_test_schema():
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()
    if TEST_DB.exists():
        TEST_DB.unlink()

@pytest.fixture(scope="session", autouse=True)
def _configure_settings_for_tests():
    # Predictable secrets for signing during tests
    _settings.stripe_webhook_secret = "whsec_test_secret"
    _settings.stripe_secret_key = "sk_test_dummy_key_123"
    yield

@pytest.fixture(autouse=True)
def fake_redis():
    """Balance publishes go to a mock instead of a live Redis."""
    client = MagicMock()
    with patch("toolcredits.services.realtime.get_redis", return_value=client):
        yield client

@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

def make_user(db: Session, credits: int = 100, role: str = "user", full_name: str = None) -> User:
    user = User(email=f"test_{uuid.uuid4().hex[:8]}@example.com", role=role)
    db.add(user)
    db.flush()
    profile = create_profile(db, user, initial_credits=credits)
    profile.full_name = full_name
    db.commit()
    db.refresh(user)
    return user

@pytest.fixture
def test_user(db_session: Session) -> User:
    return make_user(db_session, credits=100, full_name="Test User")

@pytest.fixture
def admin_user(db_session: Session) -> User:
    return make_user(db_session, credits=0, role="admin")

@pytest.fixture
def test_client() -> TestClient:
    return TestClient(app)

def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}

@pytest.fixture
def user_factory(db_session: Session):
    def _make(credits: int = 100, role: str = "user", full_name: str = None) -> User:
        return make_user(db_session, credits=credits, role=role, full_name=full_name)
    return _make

@pytest.fixture
def headers_for():
    return auth_headers
