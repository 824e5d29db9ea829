"""Rate limit introspection and administrative overrides"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from clinic_auth.core.database import get_db
from clinic_auth.schemas.rate_limit import (
    RateLimitStatus,
    UnblockResponse,
    LoginGuardClearRequest,
    LoginGuardClearResponse,
)
from clinic_auth.services.audit_service import audit_service
from clinic_auth.services.brute_force_guard import login_guard
from clinic_auth.services.rate_limiter import rate_limiter
from clinic_auth.api.deps import (
    get_client_ip,
    get_current_admin_user,
    get_user_agent,
    request_identifier,
    security,
)
from clinic_auth.models.user import User

router = APIRouter()


@router.get("/stats", response_model=RateLimitStatus)
def get_own_stats(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """Counters for the calling client"""
    token = credentials.credentials if credentials else None
    return rate_limiter.status(request_identifier(request, token))


@router.get("/status/{identifier}", response_model=RateLimitStatus)
def get_status(
    identifier: str,
    admin: User = Depends(get_current_admin_user),
):
    """Counters and block state for any identifier (e.g. `ip:10.0.0.1`)"""
    return rate_limiter.status(identifier)


@router.get("/blocked", response_model=List[RateLimitStatus])
def list_blocked(admin: User = Depends(get_current_admin_user)):
    """All identifiers currently under a hard block"""
    return rate_limiter.blocked()


@router.post("/unblock/{identifier}", response_model=UnblockResponse)
def unblock(
    identifier: str,
    request: Request,
    admin: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """Clear an identifier before its block expires"""
    removed = rate_limiter.unblock(identifier)
    audit_service.log_event(
        db,
        action="SECURITY_IP_UNBLOCKED",
        resource="SECURITY",
        user_id=admin.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        details={"identifier": identifier, "removed": removed},
    )
    return UnblockResponse(
        identifier=identifier,
        removed=removed,
        message=f"{identifier} has been unblocked",
    )


@router.post("/login-guard/clear", response_model=LoginGuardClearResponse)
def clear_login_guard(
    body: LoginGuardClearRequest,
    request: Request,
    admin: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """Forget the failed-login window for one credential and client address"""
    removed = login_guard.clear(body.credential, body.ip)
    audit_service.log_event(
        db,
        action="SECURITY_LOGIN_GUARD_CLEARED",
        resource="SECURITY",
        user_id=admin.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        details={"credential": body.credential, "ip": body.ip, "removed": removed},
    )
    return LoginGuardClearResponse(credential=body.credential, ip=body.ip, removed=removed)
