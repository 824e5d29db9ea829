from types import SimpleNamespace

from clinic_auth.core.database import SessionLocal
from clinic_auth.services import cleanup_worker as cleanup_module
from clinic_auth.services.cleanup_worker import CleanupTask, CleanupWorker


class _Session:
    def __init__(self):
        self.rolled_back = False
        self.closed = False

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


def test_tasks_run_on_their_own_interval():
    calls = []
    sessions = []

    def factory():
        session = _Session()
        sessions.append(session)
        return session

    fast = CleanupTask("fast", 10, lambda db: calls.append("fast") or 1)
    slow = CleanupTask("slow", 100, lambda db: calls.append("slow") or 0)
    worker = CleanupWorker([fast, slow], session_factory=factory)

    assert worker.run_pending(now=0) == {"fast": 1, "slow": 0}
    assert worker.run_pending(now=5) == {}
    assert worker.run_pending(now=10) == {"fast": 1}
    assert worker.run_pending(now=100) == {"fast": 1, "slow": 0}
    assert calls == ["fast", "slow", "fast", "fast", "slow"]
    assert all(s.closed for s in sessions)


def test_failed_task_is_rolled_back_and_retried_next_cycle():
    session = _Session()
    attempts = {"count": 0}

    def flaky(db):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("database unavailable")
        return 3

    task = CleanupTask("flaky", 60, flaky)
    worker = CleanupWorker([task], session_factory=lambda: session)

    assert worker.run_pending(now=0) == {}
    assert session.rolled_back
    assert worker.status()["tasks"]["flaky"]["last_error"] == "database unavailable"

    assert worker.run_pending(now=60) == {"flaky": 3}
    assert worker.status()["tasks"]["flaky"]["last_error"] is None


def test_default_tasks_sweep_expired_state(db, db_clock, make_user, monkeypatch):
    from clinic_auth.config import settings
    from clinic_auth.services.password_reset_service import PasswordResetService
    from clinic_auth.services.revocation_ledger import RevocationLedger
    from clinic_auth.services.token_service import TokenService

    tokens = TokenService(clock=db_clock)
    resets = PasswordResetService(clock=db_clock, tokens=tokens)
    ledger = RevocationLedger(clock=db_clock)
    monkeypatch.setattr(cleanup_module, "token_service", tokens)
    monkeypatch.setattr(cleanup_module, "password_reset_service", resets)
    monkeypatch.setattr(cleanup_module, "revocation_ledger", ledger)

    user = make_user(db)
    tokens.issue(db, user.id)
    resets.create(db, user)
    ledger.revoke(db, "access-token", db_clock())

    db_clock.advance(settings.REFRESH_TOKEN_EXPIRE_SECONDS + 1)
    worker = CleanupWorker(session_factory=SessionLocal)
    removed = worker.run_pending(now=0)

    assert removed["refresh_tokens"] == 1
    assert removed["password_reset_tokens"] == 1
    assert removed["revoked_tokens"] == 1
    assert "rate_limit_windows" in removed


def test_start_and_stop(monkeypatch):
    monkeypatch.setattr(cleanup_module, "settings", SimpleNamespace(CLEANUP_POLL_INTERVAL_SECONDS=0.1))
    worker = CleanupWorker([], session_factory=_Session)
    worker.start()
    try:
        assert worker.is_running()
        assert worker.status()["running"] is True
    finally:
        worker.stop()
    assert not worker.is_running()


def test_standalone_worker_skips_in_process_counters():
    from run_cleanup import build_worker

    names = [task.name for task in build_worker().tasks]
    assert names == ["refresh_tokens", "password_reset_tokens", "revoked_tokens"]
    assert "rate_limit_windows" in [task.name for task in cleanup_module.default_tasks()]
