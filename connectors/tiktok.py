"""
TikTokConnector — Login Kit v2 OAuth + Business API advertiser discovery.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import config
from connectors.assets import has_scope
from connectors.base import BaseConnector, SubFetch, object_rows
from connectors.errors import AssetFetchFailed, TokenExchangeFailed
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

_TT_AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
_TT_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
_TT_REVOKE_URL = "https://open.tiktokapis.com/v2/oauth/revoke/"
_TT_USERINFO_URL = "https://open.tiktokapis.com/v2/user/info/"
_TT_ADVERTISERS_URL = "https://business-api.tiktok.com/open_api/v1.3/oauth2/advertiser/get/"


class TikTokConnector(BaseConnector):
    """OAuth2 connector for TikTok."""

    supports_refresh = True

    @property
    def definition(self) -> PlatformDefinition:
        return PlatformDefinition(
            platform=Platform.TIKTOK,
            display_name="TikTok",
            default_scopes=("user.info.basic", "video.list"),
            authorize_url=_TT_AUTH_URL,
            token_url=_TT_TOKEN_URL,
            revoke_url=_TT_REVOKE_URL,
            scope_separator=",",
            icon="🎵",
        )

    def is_configured(self) -> bool:
        return bool(config.tiktok_client_key and config.tiktok_client_secret)

    def _auth_params(self, redirect_uri: str, scopes: List[str], state: str) -> Dict[str, str]:
        # TikTok calls the client id ``client_key``
        return {
            "client_key": config.tiktok_client_key,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.definition.scope_separator.join(scopes),
            "state": state,
        }

    # ── OAuth ───────────────────────────────────────────────────────────

    def _grant_from(self, data: Dict[str, Any]) -> TokenGrant:
        if data.get("error") or not data.get("access_token"):
            reason = data.get("error_description") or data.get("error") or "response did not contain an access_token"
            raise TokenExchangeFailed("tiktok", str(reason))
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scopes=[s for s in str(data.get("scope", "")).split(",") if s],
            raw={"open_id": data.get("open_id"), "refresh_expires_in": data.get("refresh_expires_in")},
        )

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
                _TT_TOKEN_URL,
                data={
                    "client_key": config.tiktok_client_key,
                    "client_secret": config.tiktok_client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
            )
        return self._grant_from(data)

    async def fetch_account(
        self,
        grant: TokenGrant,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> PlatformAccount:
        async with self._client() as client:
            data = await self._token_request(
                client,
                "GET",
                _TT_USERINFO_URL,
                params={"fields": "open_id,union_id,display_name,avatar_url"},
                headers=self._bearer(grant.access_token),
            )
        error = data.get("error") or {}
        if isinstance(error, dict) and error.get("code") not in (None, "ok"):
            raise TokenExchangeFailed("tiktok", f"user info error: {error.get('message') or error.get('code')}")
        body = data.get("data")
        user = body.get("user") if isinstance(body, dict) else None
        if not isinstance(user, dict):
            user = {}
        open_id = user.get("open_id") or grant.raw.get("open_id")
        if not open_id:
            raise TokenExchangeFailed("tiktok", "user info response did not contain an open_id")
        return PlatformAccount(
            platform_user_id=str(open_id),
            username=user.get("display_name"),
            meta={
                "display_name": user.get("display_name"),
                "avatar_url": user.get("avatar_url"),
                "union_id": user.get("union_id"),
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        async with self._client() as client:
            data = await self._token_request(
                client,
                "POST",
                _TT_TOKEN_URL,
                data={
                    "client_key": config.tiktok_client_key,
                    "client_secret": config.tiktok_client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )
        return self._grant_from(data)

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with self._client() as client:
                resp = await client.post(
                    _TT_REVOKE_URL,
                    data={
                        "client_key": config.tiktok_client_key,
                        "client_secret": config.tiktok_client_secret,
                        "token": access_token,
                    },
                )
                return resp.is_success
        except httpx.HTTPError:
            logger.warning("TikTok token revocation failed", exc_info=True)
            return False

    async def probe(self, connection: Connection) -> bool:
        return await self._probe(
            _TT_USERINFO_URL,
            params={"fields": "open_id"},
            headers=self._bearer(connection.access_token),
        )

    # ── Assets ──────────────────────────────────────────────────────────

    def _plan_fetches(
        self,
        access_token: str,
        granted_scopes: List[str],
        account: Optional[PlatformAccount],
    ) -> List[SubFetch]:
        plan: List[SubFetch] = []
        if account is not None and has_scope(granted_scopes, "user.info.basic"):
            plan.append((AssetType.ACCOUNT, lambda c: self._account_asset(account)))
        if has_scope(granted_scopes, "ads.read", "ads_read", "advertiser.read"):
            plan.append((AssetType.AD_ACCOUNT, lambda c: self._advertisers(c, access_token)))
        return plan

    async def _account_asset(self, account: PlatformAccount) -> List[Asset]:
        return [
            Asset(
                id=account.platform_user_id,
                name=account.username or f"TikTok Account {account.platform_user_id}",
                type=AssetType.ACCOUNT,
                platform=Platform.TIKTOK,
            )
        ]

    async def _advertisers(self, client: httpx.AsyncClient, access_token: str) -> List[Asset]:
        data = await self._get_json(
            client,
            _TT_ADVERTISERS_URL,
            asset_type=AssetType.AD_ACCOUNT,
            headers={"Access-Token": access_token},
            params={
                "app_id": config.tiktok_business_app_id,
                "secret": config.tiktok_business_secret,
            },
        )
        # The Business API reports errors as HTTP 200 with a non-zero ``code``
        if data.get("code") not in (0, None):
            raise AssetFetchFailed(
                "tiktok",
                f"business api error {data.get('code')}: {data.get('message', '')}",
                asset_type=AssetType.AD_ACCOUNT.value,
            )
        return [
            Asset(
                id=str(row["advertiser_id"]),
                name=row.get("advertiser_name") or f"TikTok Ad Account {row['advertiser_id']}",
                type=AssetType.AD_ACCOUNT,
                platform=Platform.TIKTOK,
            )
            for row in object_rows(data.get("data"), "list")
            if row.get("advertiser_id")
        ]
