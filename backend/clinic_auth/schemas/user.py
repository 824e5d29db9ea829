"""User schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum

# bcrypt rejects passwords longer than 72 bytes of UTF-8.
PASSWORD_MAX_BYTES = 72


def check_password_bytes(password: str) -> str:
    if len(password.encode('utf-8')) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return password


class UserRole(str, Enum):
    """User role enumeration"""
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"
    PATIENT = "patient"


class UserCreate(BaseModel):
    """User creation schema"""
    username: str = Field(..., min_length=3, max_length=50, pattern=r'^[a-zA-Z0-9_.-]+$')
    email: str = Field(..., min_length=3, max_length=255, pattern=r'^[^@\s]+@[^@\s]+$')
    full_name: Optional[str] = Field(None, max_length=255)
    password: str = Field(..., min_length=8, max_length=72)
    role: UserRole = UserRole.STAFF

    @field_validator('username', 'email')
    @classmethod
    def normalize(cls, v):
        """Identifiers are matched case-insensitively"""
        return v.strip().lower()

    @field_validator('password')
    @classmethod
    def password_fits_bcrypt(cls, v):
        return check_password_bytes(v)


class UserResponse(BaseModel):
    """User response schema"""
    id: int
    username: str
    email: str
    full_name: Optional[str] = None
    role: str
    is_active: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    class Config:
        from_attributes = True
