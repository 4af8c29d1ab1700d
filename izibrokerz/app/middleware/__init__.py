"""Middleware package for the rate-limit service."""

from izibrokerz.app.middleware.auth import require_admin
from izibrokerz.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "RequestIdMiddleware",
    "get_request_id",
]
