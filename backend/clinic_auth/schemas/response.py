"""Generic API response schemas"""

from pydantic import BaseModel
from typing import Optional, Any


class MessageResponse(BaseModel):
    """Plain acknowledgement"""
    message: str


class ErrorResponse(BaseModel):
    """Generic API error response"""
    success: bool = False
    error: str
    details: Optional[Any] = None
    path: Optional[str] = None
    timestamp: str


class RateLimitErrorResponse(BaseModel):
    """429 body shared by the login guard and the general limiter"""
    statusCode: int = 429
    error: str = "RATE_LIMIT_EXCEEDED"
    message: str
    timestamp: str
