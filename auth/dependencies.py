"""
FastAPI dependency for admin authentication.

``get_current_admin_id`` guards every admin route; onboarding clients are
identified by their link token instead.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token

_bearer_scheme = HTTPBearer()


async def get_current_admin_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Extract and verify the Bearer token, returning the admin id."""
    return verify_token(credentials.credentials)
