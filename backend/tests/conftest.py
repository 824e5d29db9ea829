import os
import tempfile
from datetime import datetime, timedelta

# Settings are read once at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = os.path.join(tempfile.gettempdir(), "clinic_auth_tests.log")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RUN_EMBEDDED_CLEANUP"] = "false"
os.environ["DB_INIT_MODE"] = "create_all"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789"

import pytest

from clinic_auth.core.database import Base, SessionLocal, engine
from clinic_auth.core.security import get_password_hash, utcnow
from clinic_auth.models.user import User
from clinic_auth.services.brute_force_guard import login_guard
from clinic_auth.services.rate_limiter import rate_limiter


class FakeClock:
    """Manually advanced clock; works for epoch floats and naive UTC datetimes."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        if isinstance(self.now, datetime):
            self.now += timedelta(seconds=seconds)
        else:
            self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def db_clock():
    return FakeClock(utcnow())


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _reset_counters():
    rate_limiter.store.clear()
    login_guard.store.clear()
    yield
    rate_limiter.store.clear()
    login_guard.store.clear()


@pytest.fixture
def make_user():
    def _make(session, username="alice", password="correct-horse-1", role="staff", email=None, is_active=True):
        user = User(
            username=username,
            email=email or f"{username}@clinic.test",
            full_name=username.title(),
            password_hash=get_password_hash(password),
            role=role,
            is_active=is_active,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make
