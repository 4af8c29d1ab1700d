"""Consumption gate: the per-action entry point for rate limiting.

Request handlers call ``RateLimitGate.check_rate_limit`` before running a
guarded action (login, form submission, property form, AI assistant). The
gate never raises on exhaustion; a denial is an ordinary decision carrying
a message the front-end can show as-is.

The gate is built once at the application's composition root and stored on
``app.state``; tests build their own with a fake clock and any policy table.
"""

import math
from typing import Mapping, Optional, Union

from izibrokerz.app.core.config import Settings
from izibrokerz.app.core.logging import get_log_context, get_logger
from izibrokerz.app.exceptions import UnknownPolicyError
from izibrokerz.app.ratelimit.backends import (
    BucketBackend,
    InMemoryBucketBackend,
    RedisBucketBackend,
)
from izibrokerz.app.ratelimit.keys import hash_identity
from izibrokerz.app.ratelimit.messages import DEFAULT_ACTION_LABEL, format_denial_message
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics
from izibrokerz.app.ratelimit.models import ConsumeResult, RateLimitDecision
from izibrokerz.app.ratelimit.policies import (
    DEFAULT_POLICIES,
    RateLimitPolicy,
    get_policy,
)

logger = get_logger(__name__)

PolicyRef = Union[RateLimitPolicy, str]


class RateLimitGate:
    """Consumes points from per-(policy, identity) buckets.

    Args:
        backend: Bucket store (in-memory or Redis)
        policies: Table of policies this gate accepts
        enabled: When False every check is allowed without touching the store
        metrics: Optional collector for check/deny counters
    """

    def __init__(
        self,
        backend: Optional[BucketBackend] = None,
        policies: Mapping[str, RateLimitPolicy] = DEFAULT_POLICIES,
        enabled: bool = True,
        metrics: Optional[RateLimitMetrics] = None,
    ):
        self.backend = backend if backend is not None else InMemoryBucketBackend()
        self.policies = policies
        self.enabled = enabled
        self.metrics = metrics

    def resolve_policy(self, policy: PolicyRef) -> RateLimitPolicy:
        """Map a policy name or object onto this gate's table.

        Raises:
            UnknownPolicyError: For names or objects the table does not hold
        """
        if isinstance(policy, str):
            return get_policy(policy, self.policies)
        if self.policies.get(policy.name) != policy:
            raise UnknownPolicyError(policy.name)
        return policy

    @staticmethod
    def _require_key(identity_key: str) -> None:
        if not identity_key:
            raise ValueError("identity_key must be a non-empty string")

    async def check_rate_limit(
        self,
        policy: PolicyRef,
        identity_key: str,
        action_label: str = DEFAULT_ACTION_LABEL,
    ) -> RateLimitDecision:
        """Consume one point for identity_key under policy.

        Args:
            policy: Policy object or name registered with this gate
            identity_key: Email, user id or IP identifying the actor
            action_label: Action name used in the denial message

        Returns:
            RateLimitDecision(allowed=True), or a denial carrying the
            message and ``retry_after_ms``
        """
        resolved = self.resolve_policy(policy)
        self._require_key(identity_key)

        if not self.enabled:
            return RateLimitDecision(allowed=True)

        result = await self.backend.try_consume(identity_key, resolved)

        if self.metrics is not None:
            await self.metrics.record_check(resolved.name, allowed=result.allowed)

        if result.allowed:
            return RateLimitDecision(allowed=True)

        logger.warning(
            f"Rate limit exceeded for {resolved.name}",
            extra=get_log_context(
                policy=resolved.name,
                identity=hash_identity(identity_key),
                retry_after_ms=result.ms_before_next,
            ),
        )
        return RateLimitDecision(
            allowed=False,
            error=format_denial_message(result.ms_before_next, action_label),
            retry_after_ms=result.ms_before_next,
        )

    async def peek(self, policy: PolicyRef, identity_key: str) -> Optional[ConsumeResult]:
        """Current bucket state without consuming (None if no live bucket)."""
        resolved = self.resolve_policy(policy)
        self._require_key(identity_key)
        return await self.backend.peek(identity_key, resolved)

    @staticmethod
    def reset_seconds(state: Optional[ConsumeResult]) -> int:
        """Whole seconds until ``state`` allows a retry; 0 when not limited."""
        if state is None or state.allowed:
            return 0
        return math.ceil(state.ms_before_next / 1000)

    async def seconds_until_reset(self, policy: PolicyRef, identity_key: str) -> int:
        """Whole seconds until a limited key may retry; 0 when not limited."""
        return self.reset_seconds(await self.peek(policy, identity_key))

    async def reset_key(self, policy: PolicyRef, identity_key: str) -> None:
        """Forget one bucket, e.g. after a successful login."""
        resolved = self.resolve_policy(policy)
        self._require_key(identity_key)
        await self.backend.delete(identity_key, resolved)
        logger.info(
            "Rate limit bucket reset",
            extra=get_log_context(policy=resolved.name, identity=hash_identity(identity_key)),
        )

    async def reset(self) -> None:
        """Forget every bucket."""
        await self.backend.clear()

    async def cleanup(self) -> int:
        removed = await self.backend.cleanup()
        if removed:
            logger.debug(f"Rate limit cleanup removed {removed} buckets")
        return removed

    async def close(self) -> None:
        await self.backend.close()


def should_bypass_rate_limit(user_id: str, is_premium: bool) -> bool:
    """Exemption hook for paying users.

    Currently a pass-through of ``is_premium``; nothing calls it yet.
    TODO: wire into the guard once paid plans decide whether the exemption
    applies before or after the bucket is charged.
    """
    return is_premium


def create_backend(config: Settings) -> BucketBackend:
    """Select the bucket store from settings."""
    if config.redis_enabled:
        logger.info("Using Redis rate limit backend")
        return RedisBucketBackend(
            redis_url=config.redis_url,
            key_prefix=config.rate_limit_key_prefix,
            fail_closed=config.rate_limit_fail_closed,
        )
    logger.debug("Using in-memory rate limit backend")
    return InMemoryBucketBackend(
        key_prefix=config.rate_limit_key_prefix,
        max_entries=config.rate_limit_max_entries,
    )


def create_gate(
    config: Settings,
    metrics: Optional[RateLimitMetrics] = None,
    policies: Mapping[str, RateLimitPolicy] = DEFAULT_POLICIES,
) -> RateLimitGate:
    """Build the gate for the application's composition root."""
    return RateLimitGate(
        backend=create_backend(config),
        policies=policies,
        enabled=config.rate_limiting_enabled,
        metrics=metrics,
    )
