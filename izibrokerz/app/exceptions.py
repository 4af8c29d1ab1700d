"""Custom exceptions for the rate-limit service."""

import math


class IziBrokerzException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Service error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(IziBrokerzException):
    """Raised at the HTTP boundary when a guarded action is rate limited.

    The gate itself never raises this; route dependencies convert a denied
    decision into this exception. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, message: str, retry_after_ms: int, policy: str | None = None):
        self.retry_after_ms = retry_after_ms
        self.policy = policy
        super().__init__(message)

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for the Retry-After header (never below 1)."""
        return max(1, math.ceil(self.retry_after_ms / 1000))


class UnknownPolicyError(IziBrokerzException):
    """Raised when a policy name or object is not in the active policy table.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error_code = "unknown_policy"

    def __init__(self, policy: str):
        self.policy = policy
        super().__init__(f"Unknown rate limit policy: {policy}")
