"""Pydantic schemas for API validation"""

from clinic_auth.schemas.user import UserCreate, UserResponse, UserRole
from clinic_auth.schemas.auth import (
    LoginRequest,
    TokenPairResponse,
    RefreshTokenRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
)
from clinic_auth.schemas.rate_limit import (
    RateLimitStatus,
    UnblockResponse,
    LoginGuardClearRequest,
    LoginGuardClearResponse,
)
from clinic_auth.schemas.response import MessageResponse, ErrorResponse, RateLimitErrorResponse

__all__ = [
    "UserCreate", "UserResponse", "UserRole",
    "LoginRequest", "TokenPairResponse", "RefreshTokenRequest",
    "ForgotPasswordRequest", "ResetPasswordRequest",
    "RateLimitStatus", "UnblockResponse", "LoginGuardClearRequest", "LoginGuardClearResponse",
    "MessageResponse", "ErrorResponse", "RateLimitErrorResponse",
]
