import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # JSON list is the documented format; fall back to comma/space separated.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    if "*" in parts:
        return ["*"]
    return list(dict.fromkeys(parts))


class Settings(BaseSettings):
    """Service settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings
    rate_limiting_enabled: bool = True
    rate_limit_key_prefix: str = "izibrokerz:ratelimit"
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )
    rate_limit_max_entries: int = 10000  # In-memory buckets kept before LRU eviction
    rate_limit_cleanup_interval_seconds: int = 60

    # Trust the first X-Forwarded-For hop when identifying clients by IP
    trust_forwarded_for: bool = True

    # Redis settings (optional shared bucket store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Bearer token for admin endpoints; admin routes answer 503 while empty
    admin_token: str = Field(default="", validation_alias="ADMIN_TOKEN")

    # CORS settings
    # NoDecode keeps plain "a.com,b.com" values from hitting the JSON decoder.
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("admin_token")
    @classmethod
    def strip_admin_token(cls, v: str) -> str:
        return v.strip()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one of the supported renderers."""
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @field_validator("rate_limit_max_entries")
    @classmethod
    def validate_max_entries_positive(cls, v: int) -> int:
        """Validate the in-memory bucket bound is positive."""
        if v < 1:
            raise ValueError("rate_limit_max_entries must be at least 1")
        return v

    @field_validator("rate_limit_cleanup_interval_seconds")
    @classmethod
    def validate_cleanup_interval(cls, v: int) -> int:
        """Validate cleanup interval is reasonable."""
        if v < 10:
            raise ValueError(
                "rate_limit_cleanup_interval_seconds should be at least 10 seconds"
            )
        if v > 3600:
            raise ValueError(
                "rate_limit_cleanup_interval_seconds should not exceed 1 hour"
            )
        return v

    @property
    def rate_limit_backend_name(self) -> str:
        return "redis" if self.redis_enabled else "memory"

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


# Global settings instance
settings = Settings()
