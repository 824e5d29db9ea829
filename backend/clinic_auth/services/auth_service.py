"""Session lifecycle: login, refresh, logout and password reset."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_auth.config import settings
from clinic_auth.core.exceptions import (
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidResetTokenError,
    RateLimitExceededError,
    RefreshTokenError,
    ResetTokenError,
    TokenInvalidError,
    UnknownEmailError,
)
from clinic_auth.core.metrics import LOGIN_ATTEMPTS, TOKEN_REFRESHES
from clinic_auth.core.security import create_access_token, decode_access_token, token_expiry, utcnow
from clinic_auth.models.user import User
from clinic_auth.services.audit_service import AuditService, audit_service
from clinic_auth.services.brute_force_guard import BruteForceGuard, login_guard
from clinic_auth.services.password_reset_service import PasswordResetService, password_reset_service
from clinic_auth.services.revocation_ledger import RevocationLedger, revocation_ledger
from clinic_auth.services.token_service import TokenService, token_service
from clinic_auth.services.user_service import UserService, user_service

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


class AuthService:
    """Orchestrates the guard, the token stores and the user store.

    Store-level failure kinds are logged and audited here and then collapsed
    into one client-facing error per operation.
    """

    def __init__(
        self,
        *,
        guard: BruteForceGuard = login_guard,
        tokens: TokenService = token_service,
        ledger: RevocationLedger = revocation_ledger,
        resets: PasswordResetService = password_reset_service,
        users: UserService = user_service,
        audit: AuditService = audit_service,
    ) -> None:
        self.guard = guard
        self.tokens = tokens
        self.ledger = ledger
        self.resets = resets
        self.users = users
        self.audit = audit

    @staticmethod
    def _access_token(user: User) -> str:
        return create_access_token({"sub": str(user.id), "username": user.username, "role": user.role})

    @staticmethod
    def _expires_in() -> int:
        return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    def _audit(self, db: Session, action: str, **kwargs: Any) -> None:
        self.audit.log_event(db, action=action, resource="AUTH", **kwargs)

    def login(
        self,
        db: Session,
        username: str,
        password: str,
        *,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """
        Authenticate a username/email and password and open a session.

        Raises:
            RateLimitExceededError: the guard refused the attempt
            InvalidCredentialsError: unknown identifier, wrong password or inactive account
        """
        if not self.guard.check_login_allowed(username, ip_address):
            retry_after = self.guard.retry_after(username, ip_address) or self.guard.window_seconds
            LOGIN_ATTEMPTS.labels("blocked").inc()
            logger.warning("Login attempt for %s from %s rejected by guard", username, ip_address)
            raise RateLimitExceededError(
                "Too many failed login attempts. Please try again later.",
                retry_after=retry_after,
            )

        try:
            user = self.users.verify_credentials(db, username, password)
        except Exception:
            self.guard.release(username, ip_address)
            raise
        if user is None:
            self.guard.record_login_result(username, ip_address, False)
            LOGIN_ATTEMPTS.labels("failure").inc()
            self._audit(
                db,
                "LOGIN_FAILED",
                ip_address=ip_address,
                user_agent=user_agent,
                details={"username": username},
            )
            raise InvalidCredentialsError()

        self.guard.record_login_result(username, ip_address, True)
        user.last_login = utcnow()
        refresh_value, _ = self.tokens.issue(db, user.id)
        access_value = self._access_token(user)

        LOGIN_ATTEMPTS.labels("success").inc()
        self._audit(db, "LOGIN_SUCCESS", user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        logger.info("User %s logged in from %s", user.username, ip_address)
        return user, TokenPair(access_value, refresh_value, self._expires_in())

    def refresh(
        self,
        db: Session,
        raw_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """
        Mint a new access token from a refresh token.

        The presented refresh token is returned unchanged unless
        REFRESH_TOKEN_ROTATION is enabled, in which case it is spent and a new
        one is issued.
        """
        rotate = settings.REFRESH_TOKEN_ROTATION
        try:
            record = self.tokens.verify_and_consume(db, raw_token, single_use=rotate)
        except RefreshTokenError as exc:
            self._refresh_failed(db, exc.kind, ip_address, user_agent)
            raise InvalidRefreshTokenError()

        user = self.users.get_user_by_id(db, record.user_id)
        if user is None or not user.is_active:
            self.tokens.revoke_all_for_subject(db, record.user_id)
            self._refresh_failed(db, "USER_INACTIVE", ip_address, user_agent, user_id=record.user_id)
            raise InvalidRefreshTokenError()

        refresh_value = raw_token
        if rotate:
            refresh_value, _ = self.tokens.issue(db, user.id)

        TOKEN_REFRESHES.labels("success").inc()
        return TokenPair(self._access_token(user), refresh_value, self._expires_in())

    def _refresh_failed(
        self,
        db: Session,
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        user_id: Optional[int] = None,
    ) -> None:
        logger.info("Refresh rejected: %s", reason)
        TOKEN_REFRESHES.labels(reason.lower()).inc()
        self._audit(
            db,
            "TOKEN_REFRESH_FAILED",
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"reason": reason},
        )

    def authenticate_access_token(self, db: Session, token: str) -> Tuple[User, Dict[str, Any]]:
        """Signature and expiry first, then the revocation ledger, then the account."""
        payload = decode_access_token(token)
        if not payload:
            raise TokenInvalidError()
        if self.ledger.is_revoked(db, token):
            raise TokenInvalidError()

        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise TokenInvalidError()

        user = self.users.get_user_by_id(db, user_id)
        if user is None or not user.is_active:
            raise TokenInvalidError()
        return user, payload

    def logout(
        self,
        db: Session,
        user: User,
        token: str,
        payload: Dict[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke the presented access token and every refresh token of the user."""
        expires_at = token_expiry(payload) or (
            utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        self.ledger.revoke(db, token, expires_at)
        revoked = self.tokens.revoke_all_for_subject(db, user.id)

        self._audit(
            db,
            "LOGOUT",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"refresh_tokens_revoked": revoked},
        )

        try:
            self.ledger.purge_expired(db)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Revocation ledger purge failed after logout: %s", exc)
        return revoked

    def request_password_reset(
        self,
        db: Session,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Create a reset secret for the account owning `email`; returns (user, raw secret)."""
        user = self.users.get_user_by_email(db, email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown email")
            raise UnknownEmailError()

        raw_token = self.resets.create(db, user)
        self._audit(
            db,
            "PASSWORD_RESET_REQUESTED",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, raw_token

    def reset_password(
        self,
        db: Session,
        raw_token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        try:
            user = self.resets.consume(db, raw_token, new_password)
        except ResetTokenError as exc:
            logger.info("Password reset rejected: %s", exc.kind)
            raise InvalidResetTokenError()

        self._audit(
            db,
            "PASSWORD_RESET_COMPLETED",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user


auth_service = AuthService()
