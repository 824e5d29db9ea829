import threading
import time
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from clinic_auth.core.exceptions import (
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RateLimitExceededError,
    TokenInvalidError,
    UnknownEmailError,
)
from clinic_auth.models.audit import AuditEvent
from clinic_auth.services.audit_service import AuditService
from clinic_auth.services.auth_service import AuthService
from clinic_auth.services.brute_force_guard import BruteForceGuard
from clinic_auth.services.password_reset_service import PasswordResetService
from clinic_auth.services.rate_limiter import InMemoryCounterStore
from clinic_auth.services.revocation_ledger import RevocationLedger
from clinic_auth.services.token_service import TokenService


@pytest.fixture
def service(clock, db_clock):
    tokens = TokenService(clock=db_clock)
    guard = BruteForceGuard(InMemoryCounterStore(), max_attempts=3, window_seconds=60, clock=clock)
    return AuthService(
        guard=guard,
        tokens=tokens,
        ledger=RevocationLedger(clock=db_clock),
        resets=PasswordResetService(clock=db_clock, tokens=tokens),
    )


def test_login_issues_tokens_and_stamps_last_login(db, service, make_user):
    user = make_user(db)
    logged_in, pair = service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")

    assert logged_in.id == user.id
    assert logged_in.last_login is not None
    assert service.tokens.count_live(db, user.id) == 1
    authed, payload = service.authenticate_access_token(db, pair.access_token)
    assert authed.id == user.id
    assert payload["role"] == "staff"


def test_guard_rejection_carries_retry_hint(db, service, make_user, clock):
    make_user(db)
    for _ in range(3):
        with pytest.raises(InvalidCredentialsError):
            service.login(db, "alice", "wrong", ip_address="10.0.0.1")

    with pytest.raises(RateLimitExceededError) as exc:
        service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")
    assert exc.value.retry_after == 60

    clock.advance(60)
    service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")


def test_inactive_user_cannot_log_in(db, service, make_user):
    make_user(db, is_active=False)
    with pytest.raises(InvalidCredentialsError):
        service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")


def test_login_only_hands_events_to_the_audit_sink(db, service, make_user):
    make_user(db)

    def record_only(session, **kwargs):
        service.audit.logged = kwargs["action"]
        return None

    service.audit = SimpleNamespace(log_event=record_only)
    _, pair = service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")
    assert pair.access_token
    assert service.audit.logged == "LOGIN_SUCCESS"


def test_refresh_for_deactivated_user_revokes_everything(db, service, make_user):
    user = make_user(db)
    _, pair = service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")
    user.is_active = False
    db.commit()

    with pytest.raises(InvalidRefreshTokenError):
        service.refresh(db, pair.refresh_token)
    assert service.tokens.count_live(db, user.id) == 0


def test_logout_revokes_access_token(db, service, make_user):
    user = make_user(db)
    _, pair = service.login(db, "alice", "correct-horse-1", ip_address="10.0.0.1")
    _, payload = service.authenticate_access_token(db, pair.access_token)

    assert service.logout(db, user, pair.access_token, payload) == 1
    with pytest.raises(TokenInvalidError):
        service.authenticate_access_token(db, pair.access_token)
    assert db.query(AuditEvent).filter(AuditEvent.action == "LOGOUT").count() == 1


def test_password_reset_request_for_unknown_email(db, service):
    with pytest.raises(UnknownEmailError):
        service.request_password_reset(db, "ghost@clinic.test")


def test_audit_write_errors_are_swallowed():
    class FailingSession:
        rolled_back = False

        def add(self, obj):
            pass

        def commit(self):
            raise OperationalError("INSERT INTO audit_events", {}, Exception("database is down"))

        def rollback(self):
            self.rolled_back = True

    session = FailingSession()
    assert AuditService().log_event(session, action="LOGIN_FAILED") is None
    assert session.rolled_back


def _guarded_service(clock, verify):
    guard = BruteForceGuard(InMemoryCounterStore(), max_attempts=3, window_seconds=60, clock=clock)
    return AuthService(
        guard=guard,
        users=SimpleNamespace(verify_credentials=verify),
        audit=SimpleNamespace(log_event=lambda session, **kwargs: None),
    )


def test_parallel_logins_get_no_extra_password_guesses(clock):
    verified = []

    def slow_verify(db, username, password):
        verified.append(password)
        time.sleep(0.05)
        return None

    service = _guarded_service(clock, slow_verify)
    start = threading.Barrier(20)
    outcomes = []

    def attempt(n):
        start.wait()
        try:
            service.login(None, "alice", f"guess-{n}", ip_address="10.0.0.1")
        except (InvalidCredentialsError, RateLimitExceededError) as exc:
            outcomes.append(type(exc))

    threads = [threading.Thread(target=attempt, args=(n,)) for n in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(verified) == 3
    assert outcomes.count(InvalidCredentialsError) == 3
    assert outcomes.count(RateLimitExceededError) == 17


def test_verifier_error_releases_the_attempt(clock):
    def broken_verify(db, username, password):
        raise OperationalError("SELECT users", {}, Exception("database is down"))

    service = _guarded_service(clock, broken_verify)
    for _ in range(5):
        with pytest.raises(OperationalError):
            service.login(None, "alice", "correct-horse-1", ip_address="10.0.0.1")

    assert service.guard.attempts("alice", "10.0.0.1") == 0
    assert service.guard.check_login_allowed("alice", "10.0.0.1")
