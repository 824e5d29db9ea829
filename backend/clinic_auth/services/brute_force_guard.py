"""Login brute-force protection keyed on credential + client IP."""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from clinic_auth.config import settings
from clinic_auth.core.exceptions import CounterStoreError
from clinic_auth.services.audit_service import audit_service
from clinic_auth.services.rate_limiter import InMemoryCounterStore, RateWindow

logger = logging.getLogger(__name__)

EventSink = Callable[[str, Dict[str, Any]], None]


class BruteForceGuard:
    """Fixed-window failure counter per `credential:ip`.

    The window opens on the first failure. Reaching `max_attempts` failures
    inside it denies further attempts until the window itself runs out; a
    successful login forgets the identifier.
    """

    def __init__(
        self,
        store: Optional[InMemoryCounterStore] = None,
        *,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[int] = None,
        fail_open: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.store = store or InMemoryCounterStore()
        self.max_attempts = settings.LOGIN_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.window_seconds = settings.LOGIN_ATTEMPT_WINDOW_SECONDS if window_seconds is None else window_seconds
        self.fail_open = settings.LOGIN_GUARD_FAIL_OPEN if fail_open is None else fail_open
        self._clock = clock
        self._event_sink = event_sink

    @staticmethod
    def identifier(credential_key: str, ip: str) -> str:
        return f"{credential_key.strip().lower()}:{ip}"

    def _expire(self, window: RateWindow, now: float) -> None:
        if window.count and now - window.window_start >= self.window_seconds:
            window.count = 0
            window.window_start = 0.0
            window.blocked_until = None

    def check_login_allowed(self, credential_key: str, ip: str) -> bool:
        """Admit one attempt, reserving it until `record_login_result` or `release`.

        Attempts still being verified count against `max_attempts`, so
        concurrent requests cannot get more guesses than a sequential client.
        """
        key = self.identifier(credential_key, ip)
        now = self._clock()
        try:
            with self.store.locked(key) as window:
                self._expire(window, now)
                if window.blocked_until is not None and now < window.blocked_until:
                    return False
                if window.count + window.in_flight >= self.max_attempts:
                    return False
                window.in_flight += 1
                return True
        except CounterStoreError as exc:
            logger.error("Login guard store unavailable (fail_open=%s): %s", self.fail_open, exc)
            return self.fail_open

    def release(self, credential_key: str, ip: str) -> None:
        """Give back a reserved attempt whose outcome was never decided."""
        try:
            with self.store.locked(self.identifier(credential_key, ip)) as window:
                window.in_flight = max(0, window.in_flight - 1)
        except CounterStoreError as exc:
            logger.error("Login guard store unavailable, reservation not released: %s", exc)

    def retry_after(self, credential_key: str, ip: str) -> int:
        """Seconds until the current window ends; 0 when not blocked."""
        try:
            window = self.store.get(self.identifier(credential_key, ip))
        except CounterStoreError:
            return self.window_seconds
        if window is None or not window.count:
            return 0
        remaining = window.window_start + self.window_seconds - self._clock()
        if remaining <= 0:
            return 0
        return max(1, int(math.ceil(remaining)))

    def attempts(self, credential_key: str, ip: str) -> int:
        window = self.store.get(self.identifier(credential_key, ip))
        if window is None:
            return 0
        if window.count and self._clock() - window.window_start >= self.window_seconds:
            return 0
        return window.count

    def record_login_result(self, credential_key: str, ip: str, success: bool) -> None:
        key = self.identifier(credential_key, ip)
        try:
            if success:
                self.store.delete(key)
                return
            events = self._record_failure(key, credential_key, ip)
        except CounterStoreError as exc:
            logger.error("Login guard store unavailable, result not recorded: %s", exc)
            return

        for action, details in events:
            self._emit(action, details)

    def _record_failure(
        self, key: str, credential_key: str, ip: str
    ) -> List[Tuple[str, Dict[str, Any]]]:
        now = self._clock()
        events: List[Tuple[str, Dict[str, Any]]] = []
        with self.store.locked(key) as window:
            self._expire(window, now)
            if window.count == 0:
                window.window_start = now
            window.count += 1
            window.in_flight = max(0, window.in_flight - 1)
            window.last_seen = now
            details = {"credential": credential_key, "ip": ip, "attempts": window.count}
            events.append(("LOGIN_ATTEMPT_FAILED", details))
            if window.count >= self.max_attempts and window.blocked_until is None:
                window.blocked_until = window.window_start + self.window_seconds
                events.append(("LOGIN_BLOCKED", dict(details, reason="Max attempts exceeded")))
        return events

    def _emit(self, action: str, details: Dict[str, Any]) -> None:
        if action == "LOGIN_BLOCKED":
            logger.warning("Login blocked for %s from %s", details["credential"], details["ip"])
        if self._event_sink is None:
            return
        try:
            self._event_sink(action, details)
        except Exception as exc:
            logger.warning("Security event %s dropped: %s", action, exc)

    def clear(self, credential_key: str, ip: str) -> bool:
        return self.store.delete(self.identifier(credential_key, ip))

    def cleanup_expired(self) -> int:
        now = self._clock()
        return self.store.purge(
            lambda window: window.in_flight == 0
            and now - window.window_start >= self.window_seconds
        )


login_guard = BruteForceGuard(event_sink=audit_service.record_security_event)
