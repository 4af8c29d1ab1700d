"""FastAPI dependencies shared by the routers and by guarded handlers."""

from typing import Callable, Optional

from fastapi import Depends, Request

from izibrokerz.app.core.config import Settings, settings as default_settings
from izibrokerz.app.exceptions import RateLimitExceededError
from izibrokerz.app.ratelimit.gate import RateLimitGate
from izibrokerz.app.ratelimit.keys import client_ip_key
from izibrokerz.app.ratelimit.messages import DEFAULT_ACTION_LABEL
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics
from izibrokerz.app.ratelimit.models import RateLimitDecision

KeyFunc = Callable[[Request], str]


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", default_settings)


def get_gate(request: Request) -> RateLimitGate:
    return request.app.state.rate_limit_gate


def get_metrics(request: Request) -> RateLimitMetrics:
    return request.app.state.rate_limit_metrics


def rate_limit_guard(
    policy: str,
    action_label: str = DEFAULT_ACTION_LABEL,
    key_func: Optional[KeyFunc] = None,
):
    """Build a route dependency that charges one point before the handler runs.

    Args:
        policy: Policy name registered with the app's gate
        action_label: Action name used in the denial message
        key_func: Derives the identity key from the request; defaults to the
            hashed client IP

    Example:
        >>> @router.post("/auth/login", dependencies=[Depends(rate_limit_guard("login", "login"))])
        ... async def login(...): ...

    Raises:
        RateLimitExceededError: When the gate denies the request (HTTP 429)
    """

    async def _guard(
        request: Request,
        gate: RateLimitGate = Depends(get_gate),
        config: Settings = Depends(get_settings),
    ) -> RateLimitDecision:
        if key_func is not None:
            identity_key = key_func(request)
        else:
            identity_key = client_ip_key(request, config.trust_forwarded_for)

        decision = await gate.check_rate_limit(policy, identity_key, action_label)
        if not decision.allowed:
            raise RateLimitExceededError(
                decision.error, decision.retry_after_ms, policy=policy
            )
        return decision

    return _guard
