"""API dependencies - client identity, authentication and authorization"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from clinic_auth.core.database import get_db
from clinic_auth.core.exceptions import AuthenticationError, AuthorizationError
from clinic_auth.core.security import decode_access_token
from clinic_auth.models.user import User
from clinic_auth.services.auth_service import auth_service

# HTTP Bearer token scheme; missing credentials are reported as 401, not 403
security = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> str:
    """
    Resolve the client address

    Order: first X-Forwarded-For entry, X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


def request_identifier(request: Request, bearer_token: Optional[str] = None) -> str:
    """
    Identifier the general rate limiter counts a request under

    `user:<sub>` for a validly signed access token, `ip:<address>` otherwise.
    Revocation is not consulted here; a revoked token is still attributable.
    """
    if bearer_token:
        payload = decode_access_token(bearer_token)
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return f"ip:{get_client_ip(request)}"


@dataclass
class AuthenticatedSession:
    """The caller's user together with the access token that authenticated it"""
    user: User
    token: str
    payload: Dict[str, Any]


def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> AuthenticatedSession:
    """
    Authenticate the bearer access token

    Raises:
        AuthenticationError: If the token is missing, invalid, expired or revoked
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")

    token = credentials.credentials
    user, payload = auth_service.authenticate_access_token(db, token)
    return AuthenticatedSession(user=user, token=token, payload=payload)


def get_current_user(session: AuthenticatedSession = Depends(get_current_session)) -> User:
    """Get current authenticated user"""
    return session.user


def get_current_admin_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if current_user.role != "admin":
        raise AuthorizationError("Admin access required")
    return current_user
