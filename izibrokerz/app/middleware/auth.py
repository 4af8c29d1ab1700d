"""Admin authentication for operational endpoints."""

import hmac

from fastapi import HTTPException, Request

from izibrokerz.app.core.config import Settings, settings as default_settings


def get_bearer_token(request: Request) -> str | None:
    """Extract the bearer token from the Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth[7:].strip()
    return token or None


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 503 if no admin token is configured,
            401 if the token is missing or invalid
    """
    config: Settings = getattr(request.app.state, "settings", default_settings)
    expected_token = config.admin_token
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")

    # Always compare, even with no token, to keep timing uniform
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
