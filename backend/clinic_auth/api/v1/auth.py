"""Authentication routes"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from clinic_auth.core.database import get_db
from clinic_auth.schemas.auth import (
    LoginRequest,
    TokenPairResponse,
    RefreshTokenRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
)
from clinic_auth.schemas.response import MessageResponse
from clinic_auth.schemas.user import UserResponse
from clinic_auth.services.auth_service import TokenPair, auth_service
from clinic_auth.services.email_service import email_service
from clinic_auth.api.deps import (
    AuthenticatedSession,
    get_client_ip,
    get_current_session,
    get_current_user,
    get_user_agent,
)
from clinic_auth.models.user import User

router = APIRouter()


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",
        expires_in=pair.expires_in,
    )


@router.post("/login", response_model=TokenPairResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Login endpoint - authenticate user and return an access/refresh token pair

    Repeated failures for the same username and client address are refused
    with 429 and a Retry-After header until the attempt window runs out.
    """
    _, pair = auth_service.login(
        db,
        credentials.username,
        credentials.password,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _token_response(pair)


@router.post("/refresh", response_model=TokenPairResponse)
def refresh_token(
    req: RefreshTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Exchange a refresh token for a new access token"""
    pair = auth_service.refresh(
        db,
        req.refresh_token,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _token_response(pair)


@router.post("/logout", response_model=MessageResponse, status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    session: AuthenticatedSession = Depends(get_current_session),
    db: Session = Depends(get_db)
):
    """Revoke the presented access token and all refresh tokens of the caller"""
    auth_service.logout(
        db,
        session.user,
        session.token,
        session.payload,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return MessageResponse(message="Logged out successfully")


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Email a single-use password reset link"""
    user, raw_token = auth_service.request_password_reset(
        db,
        body.email,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    background_tasks.add_task(
        email_service.send_password_reset_email, user.email, user.full_name, raw_token
    )
    return MessageResponse(message="Password reset instructions have been sent to your email")


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Set a new password using a reset token; signs the user out everywhere"""
    auth_service.reset_password(
        db,
        body.token,
        body.new_password,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return MessageResponse(message="Password has been reset successfully")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current user information"""
    return UserResponse.model_validate(current_user)
