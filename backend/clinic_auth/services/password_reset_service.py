"""One-time password reset secrets."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from clinic_auth.config import settings
from clinic_auth.core.concurrency import StripedLock
from clinic_auth.core.exceptions import (
    ResetTokenAlreadyUsedError,
    ResetTokenExpiredError,
    ResetTokenNotFoundError,
)
from clinic_auth.core.security import (
    generate_opaque_token,
    get_password_hash,
    hash_token,
    naive_utc,
    utcnow,
)
from clinic_auth.models.security import PasswordResetToken
from clinic_auth.models.user import User
from clinic_auth.services.token_service import TokenService, token_service

logger = logging.getLogger(__name__)


class PasswordResetService:
    """Issue and redeem single-use reset secrets, at most one per user."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        tokens: TokenService = token_service,
    ) -> None:
        self._clock = clock
        self._tokens = tokens
        self._subject_locks = StripedLock()
        self._secret_locks = StripedLock()

    def create(self, db: Session, user: User) -> str:
        """Replace any outstanding secret for `user` and return the new raw value."""
        raw_token = generate_opaque_token()
        with self._subject_locks.for_key(user.id):
            try:
                db.query(PasswordResetToken).filter(
                    PasswordResetToken.user_id == user.id
                ).delete(synchronize_session=False)
                db.flush()
                db.add(
                    PasswordResetToken(
                        token_hash=hash_token(raw_token),
                        user_id=user.id,
                        expires_at=self._clock()
                        + timedelta(seconds=settings.PASSWORD_RESET_EXPIRE_SECONDS),
                        used=False,
                    )
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        logger.info("Issued password reset secret for user %s", user.id)
        return raw_token

    def validate(self, db: Session, raw_token: str) -> int:
        """Return the owning user id of a usable secret; does not consume it."""
        return self._load_usable(db, raw_token).user_id

    def _load_usable(self, db: Session, raw_token: str) -> PasswordResetToken:
        record = (
            db.query(PasswordResetToken)
            .filter(PasswordResetToken.token_hash == hash_token(raw_token))
            .first()
        )
        if record is None:
            raise ResetTokenNotFoundError()
        if record.used:
            raise ResetTokenAlreadyUsedError()
        if naive_utc(record.expires_at) <= self._clock():
            raise ResetTokenExpiredError()
        return record

    def consume(self, db: Session, raw_token: str, new_password: str) -> User:
        """
        Redeem a secret: mark it used, set the new password and revoke every
        refresh token of the owner, all in one transaction.

        Raises:
            ResetTokenNotFoundError, ResetTokenAlreadyUsedError,
            ResetTokenExpiredError
        """
        password_hash = get_password_hash(new_password)
        token_hash = hash_token(raw_token)

        with self._secret_locks.for_key(token_hash):
            try:
                record = self._load_usable(db, raw_token)
                now = self._clock()
                claimed = (
                    db.query(PasswordResetToken)
                    .filter(
                        PasswordResetToken.id == record.id,
                        PasswordResetToken.used == False,  # noqa: E712
                    )
                    .update(
                        {PasswordResetToken.used: True, PasswordResetToken.used_at: now},
                        synchronize_session=False,
                    )
                )
                if claimed != 1:
                    raise ResetTokenAlreadyUsedError()

                user = (
                    db.query(User)
                    .filter(User.id == record.user_id)
                    .with_for_update()
                    .first()
                )
                if user is None:
                    raise ResetTokenNotFoundError()
                user.password_hash = password_hash
                revoked = self._tokens.revoke_all_for_subject(db, user.id, commit=False)
                db.commit()
            except Exception:
                db.rollback()
                raise

        db.refresh(user)
        logger.info("Password reset for user %s; %d session(s) revoked", user.id, revoked)
        return user

    def delete_expired(self, db: Session) -> int:
        removed = (
            db.query(PasswordResetToken)
            .filter(PasswordResetToken.expires_at < self._clock())
            .delete(synchronize_session=False)
        )
        db.commit()
        return removed


password_reset_service = PasswordResetService()
