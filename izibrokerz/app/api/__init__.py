"""HTTP routers and dependencies."""

from izibrokerz.app.api.deps import get_gate, get_metrics, get_settings, rate_limit_guard

__all__ = [
    "get_gate",
    "get_metrics",
    "get_settings",
    "rate_limit_guard",
]
