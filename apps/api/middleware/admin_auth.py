"""Admin authentication for the ban management endpoints."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException

from config import get_settings


def _get_admin_key() -> Optional[str]:
    """Read the admin key at request time so tests can override settings."""
    return get_settings().admin_api_key or None


async def verify_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    authorization: Optional[str] = Header(None),
) -> str:
    """Verify admin authentication via token header. Returns admin identifier or raises 401."""
    admin_key = _get_admin_key()
    if not admin_key:
        raise HTTPException(status_code=500, detail="ADMIN_API_KEY not configured")

    token = x_admin_token
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(status_code=401, detail="Missing admin authentication")

    if not secrets.compare_digest(token, admin_key):
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return "admin"
