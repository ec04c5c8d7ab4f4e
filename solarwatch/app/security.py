from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from .config import Settings


def secrets_match(expected: str, provided: str) -> bool:
    """Constant-time comparison. An empty expected secret never matches."""

    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), (provided or "").encode("utf-8"))


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_admin(
    request: Request,
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Admin authorization gate.

    Modes
    - ADMIN_AUTH_MODE=key  (default): require X-Admin-Key and compare with ADMIN_API_KEY
    - ADMIN_AUTH_MODE=none           : trust the perimeter (web server basic auth, VPN)
    """

    settings = app_settings(request)
    if settings.admin_auth_mode == "none":
        return

    if not x_admin_key or not secrets_match(settings.admin_api_key, x_admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
