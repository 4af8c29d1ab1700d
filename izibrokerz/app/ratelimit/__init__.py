"""Rate limiting: policies, bucket stores and the consumption gate."""

from izibrokerz.app.ratelimit.backends import (
    BucketBackend,
    InMemoryBucketBackend,
    RedisBucketBackend,
)
from izibrokerz.app.ratelimit.gate import (
    RateLimitGate,
    create_backend,
    create_gate,
    should_bypass_rate_limit,
)
from izibrokerz.app.ratelimit.messages import format_denial_message, format_wait_time
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics
from izibrokerz.app.ratelimit.models import ConsumeResult, RateLimitDecision
from izibrokerz.app.ratelimit.policies import (
    AI_POLICY,
    DEFAULT_POLICIES,
    FORM_POLICY,
    LOGIN_POLICY,
    PROPERTY_FORM_POLICY,
    RateLimitPolicy,
    build_policy_table,
    get_policy,
)

__all__ = [
    "AI_POLICY",
    "BucketBackend",
    "ConsumeResult",
    "DEFAULT_POLICIES",
    "FORM_POLICY",
    "InMemoryBucketBackend",
    "LOGIN_POLICY",
    "PROPERTY_FORM_POLICY",
    "RateLimitDecision",
    "RateLimitGate",
    "RateLimitMetrics",
    "RateLimitPolicy",
    "RedisBucketBackend",
    "build_policy_table",
    "create_backend",
    "create_gate",
    "format_denial_message",
    "format_wait_time",
    "get_policy",
    "should_bypass_rate_limit",
]
