"""Background worker for periodic expiry sweeps."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from clinic_auth.config import settings
from clinic_auth.core.database import SessionLocal
from clinic_auth.core.metrics import CLEANUP_RUNS, CLEANUP_WORKER_UP
from clinic_auth.services.brute_force_guard import login_guard
from clinic_auth.services.password_reset_service import password_reset_service
from clinic_auth.services.rate_limiter import rate_limiter
from clinic_auth.services.revocation_ledger import revocation_ledger
from clinic_auth.services.token_service import token_service

logger = logging.getLogger(__name__)


@dataclass
class CleanupTask:
    name: str
    interval_seconds: float
    run: Callable[[Session], int]
    last_run: Optional[float] = None
    last_removed: int = 0
    last_error: Optional[str] = None


def _sweep_rate_limit_windows(_db: Session) -> int:
    return rate_limiter.cleanup_inactive() + login_guard.cleanup_expired()


def default_tasks(include_counters: bool = True) -> List[CleanupTask]:
    """Database sweeps, plus the in-memory counter sweep when `include_counters`.

    Counters live in the serving process, so only a worker embedded in that
    process can sweep them.
    """
    tasks = [
        CleanupTask(
            "refresh_tokens",
            settings.CLEANUP_REFRESH_TOKENS_INTERVAL_SECONDS,
            token_service.delete_expired,
        ),
        CleanupTask(
            "password_reset_tokens",
            settings.CLEANUP_RESET_TOKENS_INTERVAL_SECONDS,
            password_reset_service.delete_expired,
        ),
        CleanupTask(
            "revoked_tokens",
            settings.CLEANUP_REVOKED_TOKENS_INTERVAL_SECONDS,
            revocation_ledger.purge_expired,
        ),
    ]
    if include_counters:
        tasks.append(
            CleanupTask(
                "rate_limit_windows",
                settings.CLEANUP_RATE_LIMIT_INTERVAL_SECONDS,
                _sweep_rate_limit_windows,
            )
        )
    return tasks


class CleanupWorker:
    """Runs each sweep on its own interval in a daemon thread.

    Every run gets a fresh session. A failed run is rolled back, logged and
    retried on the next cycle; it never stops the loop.
    """

    def __init__(
        self,
        tasks: Optional[List[CleanupTask]] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tasks = tasks if tasks is not None else default_tasks()
        self._session_factory = session_factory
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="cleanup-worker", daemon=True)
        self._thread.start()
        CLEANUP_WORKER_UP.set(1)
        logger.info("Cleanup worker started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        CLEANUP_WORKER_UP.set(0)
        logger.info("Cleanup worker stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "tasks": {
                task.name: {
                    "interval_seconds": task.interval_seconds,
                    "last_removed": task.last_removed,
                    "last_error": task.last_error,
                }
                for task in self.tasks
            },
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._heartbeat = time.time()
            self._stop_event.wait(max(0.1, settings.CLEANUP_POLL_INTERVAL_SECONDS))

    def run_pending(self, now: Optional[float] = None) -> Dict[str, int]:
        """Run every task whose interval has elapsed; returns rows removed per task run."""
        now = self._clock() if now is None else now
        results: Dict[str, int] = {}
        for task in self.tasks:
            if task.last_run is not None and now - task.last_run < task.interval_seconds:
                continue
            task.last_run = now
            removed = self._run_task(task)
            if removed is not None:
                results[task.name] = removed
        return results

    def _run_task(self, task: CleanupTask) -> Optional[int]:
        db = self._session_factory()
        try:
            removed = task.run(db)
        except Exception as exc:
            db.rollback()
            task.last_error = str(exc)
            CLEANUP_RUNS.labels(task.name, "error").inc()
            logger.exception("Cleanup task %s failed; will retry next cycle", task.name)
            return None
        finally:
            db.close()

        task.last_removed = removed
        task.last_error = None
        CLEANUP_RUNS.labels(task.name, "ok").inc()
        if removed:
            logger.info("Cleanup task %s removed %d record(s)", task.name, removed)
        return removed


cleanup_worker = CleanupWorker()
