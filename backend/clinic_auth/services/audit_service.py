"""Audit service for authentication and security events."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_auth.core.database import SessionLocal
from clinic_auth.models.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditService:
    """Append immutable audit trail entries.

    Writes never fail the caller: a persistence error is logged and the
    event is dropped.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def log_event(
        self,
        db: Session,
        *,
        action: str,
        resource: Optional[str] = None,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            user_id=user_id,
            action=action,
            resource=resource,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:255] or None,
            details=json.dumps(details or {}, ensure_ascii=False, default=str),
        )
        try:
            db.add(event)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Dropped audit event %s: %s", action, exc)
            return None
        return event

    def record_security_event(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Sink for components that run outside a request session."""
        logger.warning("Security event %s %s", action, details or {})
        db = self._session_factory()
        try:
            self.log_event(
                db,
                action=f"SECURITY_{action}",
                resource="SECURITY",
                user_id=user_id,
                ip_address=ip_address or (details or {}).get("ip"),
                details=details,
            )
        finally:
            db.close()


audit_service = AuditService()
