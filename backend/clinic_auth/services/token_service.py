"""Refresh token issuance, consumption and revocation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from clinic_auth.config import settings
from clinic_auth.core.concurrency import StripedLock
from clinic_auth.core.exceptions import (
    RefreshTokenAlreadyConsumedError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenRevokedError,
)
from clinic_auth.core.security import generate_opaque_token, hash_token, naive_utc, utcnow
from clinic_auth.models.security import RefreshToken
from clinic_auth.models.user import User

logger = logging.getLogger(__name__)


class TokenService:
    """Opaque refresh tokens with at most one live token per user.

    Issuing for a user revokes every earlier token of that user in the same
    transaction. The revoke+insert runs under a per-user lock in-process and
    under a row lock on the user across processes.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._subject_locks = StripedLock()
        self._token_locks = StripedLock()

    def issue(self, db: Session, user_id: int) -> Tuple[str, RefreshToken]:
        """Create a refresh token for `user_id`; returns (raw value, record)."""
        raw_token = generate_opaque_token()
        with self._subject_locks.for_key(user_id):
            now = self._clock()
            try:
                db.query(User.id).filter(User.id == user_id).with_for_update().first()
                revoked = self._revoke_live(db, user_id, now)
                record = RefreshToken(
                    token_hash=hash_token(raw_token),
                    user_id=user_id,
                    expires_at=now + timedelta(seconds=settings.REFRESH_TOKEN_EXPIRE_SECONDS),
                    revoked=False,
                    use_count=0,
                )
                db.add(record)
                db.commit()
            except Exception:
                db.rollback()
                raise
        if revoked:
            logger.info("Superseded %d refresh token(s) for user %s", revoked, user_id)
        return raw_token, record

    def find_by_value(self, db: Session, raw_token: str) -> Optional[RefreshToken]:
        return (
            db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_token(raw_token))
            .first()
        )

    def verify_and_consume(
        self, db: Session, raw_token: str, *, single_use: bool = False
    ) -> RefreshToken:
        """
        Validate a presented refresh token and claim one use of it.

        Expiry is checked before revocation; either failure deletes the
        record. The claim is a conditional update, so two concurrent
        presentations of the same value cannot both succeed. With
        `single_use` the token is revoked by the claim; otherwise it stays
        valid but cannot be claimed again within
        REFRESH_TOKEN_REUSE_INTERVAL_SECONDS.

        Raises:
            RefreshTokenNotFoundError, RefreshTokenAlreadyConsumedError,
            RefreshTokenExpiredError, RefreshTokenRevokedError
        """
        token_hash = hash_token(raw_token)
        with self._token_locks.for_key(token_hash):
            record = (
                db.query(RefreshToken)
                .filter(RefreshToken.token_hash == token_hash)
                .first()
            )
            if record is None:
                raise RefreshTokenNotFoundError()

            now = self._clock()
            if naive_utc(record.expires_at) <= now:
                self._discard(db, record)
                raise RefreshTokenExpiredError()
            if record.revoked:
                self._discard(db, record)
                raise RefreshTokenRevokedError()

            claim = db.query(RefreshToken).filter(
                RefreshToken.id == record.id,
                RefreshToken.revoked == False,  # noqa: E712
            )
            values = {
                RefreshToken.last_used_at: now,
                RefreshToken.use_count: RefreshToken.use_count + 1,
            }
            if single_use:
                values[RefreshToken.revoked] = True
                values[RefreshToken.revoked_at] = now
            else:
                cutoff = now - timedelta(seconds=settings.REFRESH_TOKEN_REUSE_INTERVAL_SECONDS)
                claim = claim.filter(
                    or_(RefreshToken.last_used_at.is_(None), RefreshToken.last_used_at <= cutoff)
                )

            try:
                claimed = claim.update(values, synchronize_session=False)
                if claimed != 1:
                    db.rollback()
                    raise RefreshTokenAlreadyConsumedError()
                db.commit()
            except RefreshTokenAlreadyConsumedError:
                raise
            except Exception:
                db.rollback()
                raise
            db.refresh(record)
            return record

    def revoke_all_for_subject(self, db: Session, user_id: int, *, commit: bool = True) -> int:
        with self._subject_locks.for_key(user_id):
            count = self._revoke_live(db, user_id, self._clock())
            if commit:
                db.commit()
        return count

    def count_live(self, db: Session, user_id: int) -> int:
        return (
            db.query(RefreshToken)
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked == False,  # noqa: E712
                RefreshToken.expires_at > self._clock(),
            )
            .count()
        )

    def delete_expired(self, db: Session) -> int:
        """Purge tokens past expiry, revoked or not."""
        removed = (
            db.query(RefreshToken)
            .filter(RefreshToken.expires_at < self._clock())
            .delete(synchronize_session=False)
        )
        db.commit()
        return removed

    @staticmethod
    def _revoke_live(db: Session, user_id: int, now: datetime) -> int:
        return (
            db.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id, RefreshToken.revoked == False)  # noqa: E712
            .update(
                {RefreshToken.revoked: True, RefreshToken.revoked_at: now},
                synchronize_session=False,
            )
        )

    @staticmethod
    def _discard(db: Session, record: RefreshToken) -> None:
        try:
            db.delete(record)
            db.commit()
        except Exception:
            db.rollback()
            raise


token_service = TokenService()
