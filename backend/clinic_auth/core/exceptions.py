"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class InvalidCredentialsError(AuthenticationError):
    """Invalid username or password"""
    def __init__(self):
        super().__init__("Invalid username or password")


class TokenInvalidError(AuthenticationError):
    """Access token is invalid, expired or revoked"""
    def __init__(self):
        super().__init__("Invalid or expired token")


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh failed; the client must log in again"""
    def __init__(self):
        super().__init__("Invalid or expired refresh token. Please log in again.")


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Business Logic Errors
class BusinessLogicError(BaseAPIException):
    """Business logic error"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)

class UnknownEmailError(BusinessLogicError):
    """No account is registered with the given email"""
    def __init__(self):
        super().__init__("Email not found")

class InvalidResetTokenError(BusinessLogicError):
    """Reset token cannot be used"""
    def __init__(self):
        super().__init__("Token is invalid, expired or already used")

class DuplicateUsernameError(BusinessLogicError):
    """Username already exists"""
    def __init__(self, username: str):
        super().__init__(f"Username '{username}' already exists")

class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: int = 60,
    ):
        super().__init__(message, status_code=429, details={"retry_after": retry_after})
        self.retry_after = retry_after

# Token store failures. These never reach the client directly: the session
# layer logs the kind and raises one of the generic errors above.
class RefreshTokenError(Exception):
    """Base class for refresh token lookup failures"""
    kind = "TOKEN_INVALID"

class RefreshTokenNotFoundError(RefreshTokenError):
    kind = "TOKEN_NOT_FOUND"

class RefreshTokenAlreadyConsumedError(RefreshTokenNotFoundError):
    """Token was consumed by a concurrent or too-recent request"""
    kind = "TOKEN_ALREADY_CONSUMED"

class RefreshTokenExpiredError(RefreshTokenError):
    kind = "TOKEN_EXPIRED"

class RefreshTokenRevokedError(RefreshTokenError):
    kind = "TOKEN_REVOKED"

class ResetTokenError(Exception):
    """Base class for password reset secret failures"""
    kind = "SECRET_INVALID"

class ResetTokenNotFoundError(ResetTokenError):
    kind = "SECRET_NOT_FOUND"

class ResetTokenExpiredError(ResetTokenError):
    kind = "SECRET_EXPIRED"

class ResetTokenAlreadyUsedError(ResetTokenError):
    kind = "SECRET_ALREADY_USED"

class CounterStoreError(Exception):
    """Backing store for rate-limit counters is unavailable"""
