"""
Exception taxonomy for the connection engine.

Every error carries a short ``code`` that the route layer forwards to the
browser as ``?error=<code>``.
"""

from __future__ import annotations

from typing import Any, List, Optional


class ConnectorError(Exception):
    """Base class for all connection-engine errors."""

    code = "connector_error"


class PlatformNotFound(ConnectorError):
    code = "unsupported_platform"

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform!r}")


class OAuthDenied(ConnectorError):
    """The user declined consent."""

    code = "oauth_denied"

    def __init__(self, platform: str, reason: str = "access_denied", description: str = ""):
        self.platform = platform
        self.reason = reason
        self.description = description
        super().__init__(f"{platform} authorization denied: {reason}")


class InvalidOAuthState(ConnectorError):
    code = "invalid_state"


class TokenExchangeFailed(ConnectorError):
    """Code exchange or identity lookup failed. Terminal for the attempt."""

    code = "oauth_failed"

    def __init__(self, platform: str, detail: str, status_code: Optional[int] = None):
        self.platform = platform
        self.detail = detail
        self.status_code = status_code
        status = f" ({status_code})" if status_code else ""
        super().__init__(f"{platform} token exchange failed{status}: {detail}")


class AssetFetchFailed(ConnectorError):
    code = "asset_fetch_failed"

    def __init__(
        self,
        platform: str,
        cause: str,
        *,
        asset_type: Optional[str] = None,
        status_code: Optional[int] = None,
        errors: Optional[List[Any]] = None,
    ):
        self.platform = platform
        self.asset_type = asset_type
        self.cause = cause
        self.status_code = status_code
        self.errors = errors or []
        target = f"{platform}/{asset_type}" if asset_type else platform
        super().__init__(f"Asset fetch failed for {target}: {cause}")


class ConnectionNotFound(ConnectorError):
    code = "connection_not_found"

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} not found")


class ClientNotFound(ConnectorError):
    """A client the calling admin never onboarded."""

    code = "client_not_found"

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client {client_id} not found")


class PersistenceError(ConnectorError):
    code = "persistence_error"


class InvalidShopifyStore(ConnectorError):
    code = "invalid_store"


class OnboardingLinkInvalid(ConnectorError):
    """Unknown or expired onboarding link, or a platform the link did not request."""

    code = "invalid_link"
