"""Rate limit endpoints used by the web front-end and by operators.

The front-end calls ``POST /v1/rate-limit/check`` before submitting a login,
signup, property form or AI message, and shows ``error`` to the user when
the check is denied. A denial is a normal answer (HTTP 200), not an error.
"""

from fastapi import APIRouter, Depends, Query, Response

from izibrokerz.app.api.deps import get_gate
from izibrokerz.app.api.schemas import (
    CheckRequest,
    CheckResponse,
    PolicyListResponse,
    PolicySchema,
    StatusResponse,
)
from izibrokerz.app.middleware.auth import require_admin
from izibrokerz.app.ratelimit.gate import RateLimitGate
from izibrokerz.app.ratelimit.messages import retry_after_seconds

router = APIRouter(prefix="/v1/rate-limit", tags=["rate-limit"])


@router.get("/policies", response_model=PolicyListResponse)
async def list_policies(gate: RateLimitGate = Depends(get_gate)) -> PolicyListResponse:
    return PolicyListResponse(
        policies=[PolicySchema(**p.to_dict()) for p in gate.policies.values()]
    )


@router.post("/check", response_model=CheckResponse, response_model_exclude_none=True)
async def check_rate_limit(
    body: CheckRequest,
    response: Response,
    gate: RateLimitGate = Depends(get_gate),
) -> CheckResponse:
    """Consume one point for the caller's key and report the decision."""
    decision = await gate.check_rate_limit(body.policy, body.key, body.action)
    if not decision.allowed and decision.retry_after_ms is not None:
        response.headers["Retry-After"] = str(retry_after_seconds(decision.retry_after_ms))
    return CheckResponse(**decision.to_dict())


@router.get("/{policy}/status", response_model=StatusResponse)
async def get_status(
    policy: str,
    key: str = Query(min_length=1, max_length=320),
    gate: RateLimitGate = Depends(get_gate),
    admin: str = Depends(require_admin),
) -> StatusResponse:
    """Inspect a bucket without consuming (admin only)."""
    resolved = gate.resolve_policy(policy)
    state = await gate.peek(resolved, key)
    if state is None:
        return StatusResponse(
            policy=resolved.name,
            key=key,
            limited=False,
            remaining=resolved.capacity,
            seconds_until_reset=0,
        )
    return StatusResponse(
        policy=resolved.name,
        key=key,
        limited=not state.allowed,
        remaining=state.remaining,
        seconds_until_reset=gate.reset_seconds(state),
    )


@router.delete("/{policy}/keys/{key}", status_code=204)
async def reset_key(
    policy: str,
    key: str,
    gate: RateLimitGate = Depends(get_gate),
    admin: str = Depends(require_admin),
) -> Response:
    """Unlock one actor (admin only)."""
    await gate.reset_key(policy, key)
    return Response(status_code=204)
