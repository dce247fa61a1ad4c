"""
OAuth ``state`` tokens.

No server-side session exists between the redirect to the provider and the
callback, so the state itself carries the flow context (purpose, owner,
platform, onboarding-link token) and is HMAC-signed with an expiry.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from config.settings import config
from connectors.errors import InvalidOAuthState
from connectors.schemas import FlowPurpose, OwnerKind, Platform


class OAuthState(BaseModel):
    purpose: FlowPurpose
    platform: Platform
    owner_id: str
    owner_kind: OwnerKind
    correlation_id: Optional[str] = None  # onboarding-link token for client flows
    scopes: List[str] = Field(default_factory=list)
    nonce: str
    exp: int


def _sign(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()[:32]


def create_state(
    purpose: FlowPurpose,
    platform: Platform,
    owner_id: str,
    owner_kind: OwnerKind,
    correlation_id: Optional[str] = None,
    scopes: Optional[List[str]] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    """Create an opaque, signed state string for one flow attempt."""
    ttl = ttl_seconds if ttl_seconds is not None else config.oauth_state_ttl_seconds
    state = OAuthState(
        purpose=purpose,
        platform=platform,
        owner_id=owner_id,
        owner_kind=owner_kind,
        correlation_id=correlation_id,
        scopes=list(scopes or []),
        nonce=secrets.token_urlsafe(16),
        exp=int(time.time()) + ttl,
    )
    raw = state.model_dump_json().encode()
    return urlsafe_b64encode(raw).decode().rstrip("=") + "." + _sign(raw)


def verify_state(state: Optional[str], platform: Optional[Platform] = None) -> OAuthState:
    """Verify signature, expiry and (optionally) platform; raise ``InvalidOAuthState``."""
    if not state:
        raise InvalidOAuthState("missing OAuth state")
    parts = state.split(".", 1)
    if len(parts) != 2:
        raise InvalidOAuthState("bad state format")
    encoded, sig = parts
    try:
        raw = urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
    except ValueError as exc:
        raise InvalidOAuthState("bad state encoding") from exc
    if not hmac.compare_digest(sig, _sign(raw)):
        raise InvalidOAuthState("bad state signature")
    try:
        parsed = OAuthState.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise InvalidOAuthState("malformed state payload") from exc
    if parsed.exp < time.time():
        raise InvalidOAuthState("state expired")
    if platform is not None and parsed.platform != platform:
        raise InvalidOAuthState(
            f"state was issued for {parsed.platform.value}, callback is for {platform.value}"
        )
    return parsed


def peek_correlation_id(state: Optional[str]) -> Optional[str]:
    """Best-effort read of the onboarding token for error redirects; never raises."""
    try:
        return verify_state(state).correlation_id
    except InvalidOAuthState:
        return None
