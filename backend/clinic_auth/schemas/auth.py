"""Authentication request/response schemas"""

from pydantic import BaseModel, Field, field_validator

from clinic_auth.schemas.user import check_password_bytes


class LoginRequest(BaseModel):
    """Login body; `username` may also be an email address"""
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=255)


class TokenPairResponse(BaseModel):
    """Access + refresh token pair"""
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    token_type: str = Field("bearer", alias="tokenType")
    expires_in: int = Field(..., alias="expiresIn")

    class Config:
        populate_by_name = True


class RefreshTokenRequest(BaseModel):
    """Refresh body"""
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=512)

    class Config:
        populate_by_name = True


class ForgotPasswordRequest(BaseModel):
    """Password reset request body"""
    email: str = Field(..., min_length=3, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Password reset completion body"""
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., alias="newPassword", min_length=8, max_length=72)

    @field_validator('new_password')
    @classmethod
    def password_fits_bcrypt(cls, v):
        return check_password_bytes(v)

    class Config:
        populate_by_name = True
