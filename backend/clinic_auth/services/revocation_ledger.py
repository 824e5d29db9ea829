"""Ledger of access tokens revoked before their natural expiry."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_auth.core.security import hash_token, naive_utc, utcnow
from clinic_auth.models.security import RevokedToken

logger = logging.getLogger(__name__)


class RevocationLedger:
    """Set of revoked access tokens, keyed by token digest.

    An entry only needs to outlive the token it names; once `expires_at`
    passes the token fails signature validation anyway and the row can go.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def revoke(self, db: Session, token: str, expires_at: datetime) -> None:
        """Record `token` as revoked. Revoking twice is a no-op."""
        entry = RevokedToken(token_hash=hash_token(token), expires_at=naive_utc(expires_at))
        try:
            db.add(entry)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("Token already present in revocation ledger")

    def is_revoked(self, db: Session, token: str) -> bool:
        return (
            db.query(RevokedToken.token_hash)
            .filter(RevokedToken.token_hash == hash_token(token))
            .first()
            is not None
        )

    def purge_expired(self, db: Session) -> int:
        removed = (
            db.query(RevokedToken)
            .filter(RevokedToken.expires_at < self._clock())
            .delete(synchronize_session=False)
        )
        db.commit()
        if removed:
            logger.info("Purged %d expired revocation entries", removed)
        return removed


revocation_ledger = RevocationLedger()
