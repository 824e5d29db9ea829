"""Rate limit introspection schemas"""

from pydantic import BaseModel, Field
from typing import Optional


class RateLimitStatus(BaseModel):
    """Counters and state for one identifier"""
    identifier: str
    state: str
    count: int
    total: int
    limit: int
    block_threshold: int
    blocked_until: Optional[str] = None
    retry_after: int = 0
    last_request: Optional[str] = None


class UnblockResponse(BaseModel):
    identifier: str
    removed: bool
    message: str


class LoginGuardClearRequest(BaseModel):
    """Identifies one brute-force window"""
    credential: str = Field(..., min_length=1, max_length=255)
    ip: str = Field(..., min_length=1, max_length=64)


class LoginGuardClearResponse(BaseModel):
    credential: str
    ip: str
    removed: bool
