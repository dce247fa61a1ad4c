"""
BaseConnector — abstract interface for all platform connectors.

Every provider (Meta, Google, TikTok, Shopify) subclasses this and supplies
its static ``PlatformDefinition``, the code exchange, the identity lookup,
the per-asset-type fetch plan and a cheap validity probe.  Provider-specific
field mapping stays inside the subclass so the reconciler never sees raw
provider JSON.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.assets import dedupe_assets
from connectors.errors import AssetFetchFailed, TokenExchangeFailed
from connectors.schemas import (
    AssetFetchResult,
    Asset,
    AssetType,
    Connection,
    FetchError,
    Platform,
    PlatformAccount,
    PlatformDefinition,
    TokenGrant,
)

logger = logging.getLogger(__name__)

# One entry per asset type: (type, coroutine taking the shared client)
SubFetch = Tuple[AssetType, Callable[[httpx.AsyncClient], Awaitable[List[Asset]]]]
ErrorFactory = Callable[[str, Optional[int]], Exception]


def object_rows(data: Any, key: str) -> List[Dict[str, Any]]:
    """The list under ``key`` with non-object entries dropped; [] when absent or not a list."""
    value = data.get(key) if isinstance(data, dict) else None
    if not isinstance(value, list):
        return []
    return [row for row in value if isinstance(row, dict)]


def describe_error(resp: httpx.Response) -> str:
    """
    Best-effort human-readable reason from a provider error response.

    Meta nests ``{"error": {"message": ...}}``, Google uses the same shape
    or ``error_description``, TikTok returns ``message``; anything else is
    reported as raw text.
    """
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or resp.reason_phrase or "")[:300]

    msg: Any = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            msg = err.get("message") or err.get("status")
        elif isinstance(err, str):
            msg = body.get("error_description") or err
        else:
            msg = body.get("message") or body.get("errors")
    return str(msg or body)[:300]


class BaseConnector(ABC):
    """Abstract base for all platform connectors."""

    supports_refresh = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def definition(self) -> PlatformDefinition:
        ...

    @property
    def platform(self) -> Platform:
        return self.definition.platform

    @property
    def display_name(self) -> str:
        return self.definition.display_name

    @property
    def scopes(self) -> List[str]:
        return list(self.definition.default_scopes)

    @property
    def icon(self) -> str:
        return self.definition.icon

    def is_configured(self) -> bool:
        """True if client id / secret are present."""
        return True

    # ── HTTP ────────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            transport=self._transport,
        )

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        on_error: ErrorFactory,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Issue a request; any non-2xx, network error or non-JSON body raises ``on_error``."""
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise on_error(f"network error: {exc.__class__.__name__}: {exc}", None) from exc

        if not resp.is_success:
            raise on_error(describe_error(resp), resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise on_error("invalid JSON in provider response", resp.status_code) from exc
        if not isinstance(data, dict):
            raise on_error("unexpected provider response shape", resp.status_code)
        return data

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        asset_type: Optional[AssetType] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        platform = self.platform.value
        type_name = asset_type.value if asset_type else None

        def _fail(cause: str, status_code: Optional[int]) -> Exception:
            return AssetFetchFailed(platform, cause, asset_type=type_name, status_code=status_code)

        return await self._request_json(client, "GET", url, _fail, **kwargs)

    async def _token_request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        platform = self.platform.value

        def _fail(detail: str, status_code: Optional[int]) -> Exception:
            return TokenExchangeFailed(platform, detail, status_code)

        return await self._request_json(client, method, url, _fail, **kwargs)

    async def _probe(self, url: str, **kwargs: Any) -> bool:
        """
        Cheap liveness call.  2xx → True, 4xx → False (token rejected).
        Network errors and 5xx raise ``AssetFetchFailed`` because they say
        nothing about the token.
        """
        try:
            async with self._client() as client:
                resp = await client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise AssetFetchFailed(self.platform.value, f"probe network error: {exc}") from exc
        if resp.is_success:
            return True
        if 400 <= resp.status_code < 500:
            logger.info(
                "%s probe rejected token (%s): %s",
                self.platform.value, resp.status_code, describe_error(resp),
            )
            return False
        raise AssetFetchFailed(
            self.platform.value,
            f"probe failed: {describe_error(resp)}",
            status_code=resp.status_code,
        )

    # ── OAuth flow ──────────────────────────────────────────────────────

    def _auth_params(
        self,
        redirect_uri: str,
        scopes: List[str],
        state: str,
    ) -> Dict[str, str]:
        return {
            "client_id": self._client_id(),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.definition.scope_separator.join(scopes),
            "state": state,
        }

    def _client_id(self) -> str:
        return ""

    def _authorize_endpoint(self, extra_params: Dict[str, str]) -> str:
        return self.definition.authorize_url

    def get_auth_url(
        self,
        redirect_uri: str,
        scopes: Optional[Iterable[str]],
        state: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Build the provider's authorization URL.

        ``redirect_uri`` is sent verbatim; it must match the value
        registered with the provider character for character.
        """
        extra = dict(extra_params or {})
        params = self._auth_params(redirect_uri, list(scopes or self.scopes), state)
        params.update(extra)
        return f"{self._authorize_endpoint(extra)}?{urlencode(params)}"

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> TokenGrant:
        """Exchange the authorization code for tokens (``TokenExchangeFailed`` on error)."""
        ...

    @abstractmethod
    async def fetch_account(
        self,
        grant: TokenGrant,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> PlatformAccount:
        """Identify the external account the token was issued for."""
        ...

    async def resolve_granted_scopes(
        self,
        grant: TokenGrant,
        requested: List[str],
    ) -> List[str]:
        """Scopes the provider actually granted; falls back to what was requested."""
        return list(grant.scopes) if grant.scopes else list(requested)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        raise NotImplementedError(f"{self.platform.value} does not support token refresh")

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    @abstractmethod
    async def probe(self, connection: Connection) -> bool:
        """Cheap live check that the stored credentials still work."""
        ...

    # ── Assets ──────────────────────────────────────────────────────────

    @abstractmethod
    def _plan_fetches(
        self,
        access_token: str,
        granted_scopes: List[str],
        account: Optional[PlatformAccount],
    ) -> List[SubFetch]:
        """Return the asset-type sub-fetches the granted scopes allow."""
        ...

    async def fetch_assets(
        self,
        access_token: str,
        granted_scopes: Iterable[str],
        account: Optional[PlatformAccount] = None,
    ) -> AssetFetchResult:
        """
        Fetch, normalize and deduplicate this platform's assets.

        Each asset type is fetched independently: a failure is recorded in
        ``result.errors`` and the remaining types still run.  Only when every
        attempted type failed does the call raise ``AssetFetchFailed``.
        """
        granted = list(granted_scopes)
        plan = self._plan_fetches(access_token, granted, account)
        result = AssetFetchResult(attempted=[asset_type for asset_type, _ in plan])
        if not plan:
            logger.info("[%s] No asset-bearing scopes granted: %s", self.platform.value, granted)
            return result

        collected: List[Asset] = []
        async with self._client() as client:
            for asset_type, fetch in plan:
                try:
                    items = await fetch(client)
                except AssetFetchFailed as exc:
                    logger.warning(
                        "[%s] %s fetch failed: %s", self.platform.value, asset_type.value, exc.cause,
                    )
                    result.errors.append(
                        FetchError(
                            platform=self.platform,
                            asset_type=asset_type.value,
                            cause=exc.cause,
                            status_code=exc.status_code,
                        )
                    )
                    continue
                except (KeyError, TypeError, ValueError, AttributeError) as exc:
                    # Response parsed but did not have the shape we map from
                    logger.warning(
                        "[%s] %s response could not be parsed: %r", self.platform.value, asset_type.value, exc,
                    )
                    result.errors.append(
                        FetchError(
                            platform=self.platform,
                            asset_type=asset_type.value,
                            cause=f"unexpected provider response: {exc.__class__.__name__}: {exc}",
                        )
                    )
                    continue
                logger.debug("[%s] %s: %d found", self.platform.value, asset_type.value, len(items))
                collected.extend(items)

        if len(result.errors) == len(plan):
            first = result.errors[0]
            raise AssetFetchFailed(
                self.platform.value,
                f"all {len(plan)} asset fetches failed; first: {first.cause}",
                status_code=first.status_code,
                errors=list(result.errors),
            )

        result.assets = dedupe_assets(collected)
        logger.info(
            "[%s] Fetched %d assets (%d raw, %d failed types)",
            self.platform.value, len(result.assets), len(collected), len(result.errors),
        )
        return result
