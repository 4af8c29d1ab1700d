"""Request and response models for the rate limit API."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from izibrokerz.app.ratelimit.messages import DEFAULT_ACTION_LABEL


class PolicySchema(BaseModel):
    name: str
    capacity: int
    window_seconds: int
    cooldown_seconds: int


class PolicyListResponse(BaseModel):
    policies: list[PolicySchema]


class CheckRequest(BaseModel):
    """Consume one point for ``key`` under ``policy``."""

    policy: str = Field(min_length=1, max_length=64)
    # Email, user id or IP of the actor
    key: str = Field(min_length=1, max_length=320)
    action: str = Field(default=DEFAULT_ACTION_LABEL, min_length=1, max_length=80)

    @field_validator("policy", "key", "action", mode="before")
    @classmethod
    def strip_whitespace(cls, v):
        return v.strip() if isinstance(v, str) else v


class CheckResponse(BaseModel):
    allowed: bool
    error: Optional[str] = None
    retry_after_ms: Optional[int] = None


class StatusResponse(BaseModel):
    policy: str
    key: str
    limited: bool
    remaining: int
    seconds_until_reset: int
