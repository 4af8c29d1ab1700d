"""Metrics and monitoring endpoints for the rate-limit service."""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from izibrokerz.app.api.deps import get_metrics
from izibrokerz.app.middleware.auth import require_admin
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics

router = APIRouter()


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(
    metrics: RateLimitMetrics = Depends(get_metrics),
    admin: str = Depends(require_admin),
) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    content = await metrics.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def rate_limit_stats(
    metrics: RateLimitMetrics = Depends(get_metrics),
    admin: str = Depends(require_admin),
) -> dict[str, Any]:
    """Per-policy check and denial counts (admin only)."""
    return await metrics.get_summary()
