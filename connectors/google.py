"""
GoogleConnector — OAuth2 web flow + marketing asset discovery.

Every asset type lives behind its own API surface and its own scope:

    adwords              → Google Ads customers
    analytics.readonly   → Analytics properties (Admin API account summaries)
    webmasters.readonly  → Search Console sites
    tagmanager.readonly  → Tag Manager accounts
    business.manage      → Business Profile accounts
    content              → Merchant Center accounts

A type is only requested when its scope was granted.
"""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode
from typing import Any, Dict, List, Optional

import httpx

from config.settings import config
from connectors.assets import has_scope
from connectors.base import BaseConnector, SubFetch, object_rows
from connectors.errors import TokenExchangeFailed
from connectors.schemas import (
    Asset,
    AssetType,
    Connection,
    Platform,
    PlatformAccount,
    PlatformDefinition,
    TokenGrant,
)

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Asset APIs
_ANALYTICS_SUMMARIES_URL = "https://analyticsadmin.googleapis.com/v1beta/accountSummaries"
_SEARCH_CONSOLE_URL = "https://www.googleapis.com/webmasters/v3/sites"
_TAG_MANAGER_URL = "https://tagmanager.googleapis.com/tagmanager/v2/accounts"
_BUSINESS_PROFILE_URL = "https://mybusinessaccountmanagement.googleapis.com/v1/accounts"
_MERCHANT_AUTHINFO_URL = "https://shoppingcontent.googleapis.com/content/v2.1/accounts/authinfo"

ADS_SCOPE = "https://www.googleapis.com/auth/adwords"
ANALYTICS_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"
SEARCH_CONSOLE_SCOPE = "https://www.googleapis.com/auth/webmasters.readonly"
TAG_MANAGER_SCOPE = "https://www.googleapis.com/auth/tagmanager.readonly"
BUSINESS_PROFILE_SCOPE = "https://www.googleapis.com/auth/business.manage"
MERCHANT_SCOPE = "https://www.googleapis.com/auth/content"


def decode_id_token(id_token: Optional[str]) -> Dict[str, Any]:
    """Read the (unverified) claims of an OIDC id_token; {} if malformed."""
    if not id_token:
        return {}
    try:
        payload = id_token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(urlsafe_b64decode(payload))
    except (IndexError, ValueError):
        return {}
    return claims if isinstance(claims, dict) else {}


class GoogleConnector(BaseConnector):
    """OAuth2 connector for Google marketing properties."""

    supports_refresh = True

    @property
    def definition(self) -> PlatformDefinition:
        return PlatformDefinition(
            platform=Platform.GOOGLE,
            display_name="Google",
            default_scopes=(
                "openid",
                "email",
                "profile",
                ANALYTICS_SCOPE,
                ADS_SCOPE,
                SEARCH_CONSOLE_SCOPE,
            ),
            authorize_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            revoke_url=_GOOGLE_REVOKE_URL,
            scope_separator=" ",
            icon="🔍",
        )

    def is_configured(self) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    def _client_id(self) -> str:
        return config.google_client_id

    def _auth_params(self, redirect_uri: str, scopes: List[str], state: str) -> Dict[str, str]:
        params = super()._auth_params(redirect_uri, scopes, state)
        params.update(
            {
                "access_type": "offline",       # gets refresh_token
                "prompt": "consent",            # force consent to always get refresh_token
                "include_granted_scopes": "true",
            }
        )
        return params

    # ── OAuth ───────────────────────────────────────────────────────────

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> TokenGrant:
        async with self._client() as client:
            data = await self._token_request(
                client,
                "POST",
                _GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": config.google_client_id,
                    "client_secret": config.google_client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        if not data.get("access_token"):
            raise TokenExchangeFailed("google", "response did not contain an access_token")
        logger.info("[google] token scopes returned: %s", data.get("scope", ""))
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scopes=data.get("scope", "").split(),
            id_token=data.get("id_token"),
            raw={k: v for k, v in data.items() if k not in ("access_token", "refresh_token", "id_token")},
        )

    async def fetch_account(
        self,
        grant: TokenGrant,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> PlatformAccount:
        async with self._client() as client:
            user = await self._token_request(
                client,
                "GET",
                _GOOGLE_USERINFO_URL,
                headers=self._bearer(grant.access_token),
            )
        # ``sub`` survives email changes; userinfo ``id`` is the same value when present
        stable_id = decode_id_token(grant.id_token).get("sub") or user.get("id")
        if not stable_id:
            raise TokenExchangeFailed("google", "could not determine a stable account id")
        return PlatformAccount(
            platform_user_id=str(stable_id),
            username=user.get("email"),
            email=user.get("email"),
            meta={
                "email": user.get("email"),
                "name": user.get("name"),
                "picture": user.get("picture"),
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Use refresh token to get a new access token."""
        async with self._client() as client:
            data = await self._token_request(
                client,
                "POST",
                _GOOGLE_TOKEN_URL,
                data={
                    "client_id": config.google_client_id,
                    "client_secret": config.google_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        if not data.get("access_token"):
            raise TokenExchangeFailed("google", "refresh response did not contain an access_token")
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in", 3600),
            scopes=data.get("scope", "").split(),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token at Google."""
        try:
            async with self._client() as client:
                resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": access_token})
                return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def probe(self, connection: Connection) -> bool:
        return await self._probe(_GOOGLE_TOKENINFO_URL, params={"access_token": connection.access_token})

    # ── Assets ──────────────────────────────────────────────────────────

    def _plan_fetches(
        self,
        access_token: str,
        granted_scopes: List[str],
        account: Optional[PlatformAccount],
    ) -> List[SubFetch]:
        headers = self._bearer(access_token)
        plan: List[SubFetch] = []
        if has_scope(granted_scopes, ADS_SCOPE):
            plan.append((AssetType.ADS_ACCOUNT, lambda c: self._ads_accounts(c, headers)))
        if has_scope(granted_scopes, ANALYTICS_SCOPE):
            plan.append((AssetType.ANALYTICS_PROPERTY, lambda c: self._analytics_properties(c, headers)))
        if has_scope(granted_scopes, SEARCH_CONSOLE_SCOPE):
            plan.append((AssetType.SEARCH_CONSOLE, lambda c: self._search_console_sites(c, headers)))
        if has_scope(granted_scopes, TAG_MANAGER_SCOPE):
            plan.append((AssetType.TAG_MANAGER, lambda c: self._tag_manager_accounts(c, headers)))
        if has_scope(granted_scopes, BUSINESS_PROFILE_SCOPE):
            plan.append((AssetType.BUSINESS_PROFILE, lambda c: self._business_profiles(c, headers)))
        if has_scope(granted_scopes, MERCHANT_SCOPE):
            plan.append((AssetType.MERCHANT_CENTER, lambda c: self._merchant_accounts(c, headers)))
        return plan

    @staticmethod
    def _asset(asset_type: AssetType, asset_id: str, name: Optional[str], fallback: str, **metadata: Any) -> Asset:
        return Asset(
            id=asset_id,
            name=name or f"{fallback} {asset_id}",
            type=asset_type,
            platform=Platform.GOOGLE,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    async def _ads_accounts(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        url = (
            f"https://googleads.googleapis.com/{config.google_ads_api_version}"
            "/customers:listAccessibleCustomers"
        )
        data = await self._get_json(
            client,
            url,
            asset_type=AssetType.ADS_ACCOUNT,
            headers={**headers, "developer-token": config.google_ads_developer_token},
        )
        assets = []
        resources = data.get("resourceNames")
        for resource in resources if isinstance(resources, list) else []:
            if not isinstance(resource, str):
                continue
            customer_id = resource.replace("customers/", "")
            assets.append(
                self._asset(AssetType.ADS_ACCOUNT, customer_id, None, "Google Ads Account", resource_name=resource)
            )
        return assets

    async def _analytics_properties(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        data = await self._get_json(
            client,
            _ANALYTICS_SUMMARIES_URL,
            asset_type=AssetType.ANALYTICS_PROPERTY,
            headers=headers,
            params={"pageSize": 200},
        )
        assets = []
        for summary in object_rows(data, "accountSummaries"):
            for prop in object_rows(summary, "propertySummaries"):
                property_id = str(prop.get("property", "")).replace("properties/", "")
                if not property_id:
                    continue
                assets.append(
                    self._asset(
                        AssetType.ANALYTICS_PROPERTY,
                        property_id,
                        prop.get("displayName"),
                        "Analytics Property",
                        account=summary.get("account"),
                        account_name=summary.get("displayName"),
                    )
                )
        return assets

    async def _search_console_sites(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        data = await self._get_json(
            client, _SEARCH_CONSOLE_URL, asset_type=AssetType.SEARCH_CONSOLE, headers=headers,
        )
        return [
            self._asset(
                AssetType.SEARCH_CONSOLE,
                site["siteUrl"],
                site["siteUrl"],
                "Site",
                permission_level=site.get("permissionLevel"),
            )
            for site in object_rows(data, "siteEntry")
            if site.get("siteUrl")
        ]

    async def _tag_manager_accounts(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        data = await self._get_json(
            client, _TAG_MANAGER_URL, asset_type=AssetType.TAG_MANAGER, headers=headers,
        )
        return [
            self._asset(AssetType.TAG_MANAGER, str(acc["accountId"]), acc.get("name"), "Tag Manager Account")
            for acc in object_rows(data, "account")
            if acc.get("accountId")
        ]

    async def _business_profiles(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        data = await self._get_json(
            client, _BUSINESS_PROFILE_URL, asset_type=AssetType.BUSINESS_PROFILE, headers=headers,
        )
        assets = []
        for acc in object_rows(data, "accounts"):
            account_id = str(acc.get("name", "")).replace("accounts/", "")
            if account_id:
                assets.append(
                    self._asset(
                        AssetType.BUSINESS_PROFILE,
                        account_id,
                        acc.get("accountName"),
                        "Business Profile",
                        account_type=acc.get("type"),
                    )
                )
        return assets

    async def _merchant_accounts(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        data = await self._get_json(
            client, _MERCHANT_AUTHINFO_URL, asset_type=AssetType.MERCHANT_CENTER, headers=headers,
        )
        assets = []
        for ident in object_rows(data, "accountIdentifiers"):
            merchant_id = ident.get("merchantId") or ident.get("aggregatorId")
            if merchant_id:
                assets.append(
                    self._asset(AssetType.MERCHANT_CENTER, str(merchant_id), None, "Merchant Center Account")
                )
        return assets
