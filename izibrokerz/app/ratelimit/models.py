"""Rate limiting data models.

This module contains dataclasses for bucket state and check results.
"""

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional


@dataclass
class BucketState:
    """In-memory state for one (policy, identity) bucket.

    ``hits`` holds the clock readings of allowed consumptions still inside
    the rolling window, oldest first.
    """
    window_seconds: float
    hits: Deque[float] = field(default_factory=deque)
    blocked_until: Optional[float] = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def prune(self, now: float) -> None:
        """Drop hits that have left the rolling window."""
        horizon = now - self.window_seconds
        while self.hits and self.hits[0] <= horizon:
            self.hits.popleft()

    def ms_until_oldest_expires(self, now: float) -> int:
        if not self.hits:
            return 0
        return max(0, math.ceil((self.hits[0] + self.window_seconds - now) * 1000))

    def is_idle(self, now: float) -> bool:
        """True when nothing in the bucket constrains future consumption."""
        if self.is_blocked(now):
            return False
        return not self.hits or self.hits[-1] <= now - self.window_seconds


@dataclass
class ConsumeResult:
    """Backend answer for one consumption (or a peek)."""
    allowed: bool
    capacity: int
    remaining: int
    ms_before_next: int
    blocked: bool = False


@dataclass
class RateLimitDecision:
    """Gate answer handed to request handlers.

    ``error`` and ``retry_after_ms`` are only set for denials.
    """
    allowed: bool
    error: Optional[str] = None
    retry_after_ms: Optional[int] = None

    def to_dict(self) -> dict:
        data: dict = {"allowed": self.allowed}
        if self.error is not None:
            data["error"] = self.error
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        return data
