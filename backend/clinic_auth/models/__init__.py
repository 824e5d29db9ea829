"""Database models"""

from clinic_auth.models.user import User
from clinic_auth.models.security import RefreshToken, RevokedToken, PasswordResetToken
from clinic_auth.models.audit import AuditEvent

__all__ = ["User", "RefreshToken", "RevokedToken", "PasswordResetToken", "AuditEvent"]
