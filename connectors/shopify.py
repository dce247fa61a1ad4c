"""
ShopifyConnector — store access by domain + collaborator code, or OAuth.

Shopify has no "list my stores" API.  The store is identified by its
``*.myshopify.com`` domain; the collaborator access code the merchant hands
over is kept in the connection's token slot.  When an app client id/secret
is configured the regular shop-scoped OAuth flow is available as well, and
both paths key the connection on the same store handle.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

from config.settings import config
from connectors.base import BaseConnector, SubFetch
from connectors.errors import InvalidShopifyStore, TokenExchangeFailed
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

STORE_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")
NO_COLLABORATOR_CODE = "none"
MANUAL_SCOPES = ["store_access"]


def validate_store_domain(store_domain: str) -> str:
    """Return the lower-cased domain or raise ``InvalidShopifyStore``."""
    domain = (store_domain or "").strip().lower()
    if domain.startswith("https://"):
        domain = domain[len("https://"):]
    domain = domain.rstrip("/")
    if not STORE_DOMAIN_RE.match(domain):
        raise InvalidShopifyStore(
            "Invalid store domain format. Must be in format: storename.myshopify.com"
        )
    return domain


def validate_collaborator_code(code: str) -> str:
    code = (code or "").strip()
    if code.lower() == NO_COLLABORATOR_CODE:
        return NO_COLLABORATOR_CODE
    if not 4 <= len(code) <= 8:
        raise InvalidShopifyStore('Invalid collaborator code format. Must be 4-8 characters or "none"')
    return code


def store_id_from_domain(store_domain: str) -> str:
    return store_domain[: -len(".myshopify.com")]


class ShopifyConnector(BaseConnector):
    """Connector for Shopify stores."""

    @property
    def definition(self) -> PlatformDefinition:
        return PlatformDefinition(
            platform=Platform.SHOPIFY,
            display_name="Shopify",
            default_scopes=("read_orders", "read_products", "read_customers"),
            authorize_url="https://{shop}/admin/oauth/authorize",
            token_url="https://{shop}/admin/oauth/access_token",
            scope_separator=",",
            icon="🛍️",
        )

    def is_configured(self) -> bool:
        # Manual store connect needs no app credentials
        return True

    def oauth_configured(self) -> bool:
        return bool(config.shopify_client_id and config.shopify_client_secret)

    def _client_id(self) -> str:
        return config.shopify_client_id

    @staticmethod
    def _shop(extra_params: Optional[Dict[str, str]]) -> str:
        return validate_store_domain((extra_params or {}).get("shop", ""))

    def _authorize_endpoint(self, extra_params: Dict[str, str]) -> str:
        return self.definition.authorize_url.format(shop=self._shop(extra_params))

    def manual_account(self, store_domain: str) -> PlatformAccount:
        domain = validate_store_domain(store_domain)
        return PlatformAccount(
            platform_user_id=store_id_from_domain(domain),
            username=domain,
            meta={"store_domain": domain, "connected_via": "collaborator_code"},
        )

    # ── OAuth ───────────────────────────────────────────────────────────

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> TokenGrant:
        try:
            shop = self._shop(extra_params)
        except InvalidShopifyStore as exc:
            raise TokenExchangeFailed("shopify", str(exc)) from exc
        async with self._client() as client:
            data = await self._token_request(
                client,
                "POST",
                self.definition.token_url.format(shop=shop),
                data={
                    "client_id": config.shopify_client_id,
                    "client_secret": config.shopify_client_secret,
                    "code": code,
                },
            )
        if not data.get("access_token"):
            raise TokenExchangeFailed("shopify", "response did not contain an access_token")
        # Offline store tokens never expire
        return TokenGrant(
            access_token=data["access_token"],
            scopes=[s for s in str(data.get("scope", "")).split(",") if s],
            raw={"shop": shop},
        )

    async def fetch_account(
        self,
        grant: TokenGrant,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> PlatformAccount:
        shop = grant.raw.get("shop") or self._shop(extra_params)
        async with self._client() as client:
            data = await self._token_request(
                client,
                "GET",
                f"https://{shop}/admin/api/{config.shopify_api_version}/shop.json",
                headers={"X-Shopify-Access-Token": grant.access_token},
            )
        info = data.get("shop")
        if not isinstance(info, dict):
            info = {}
        return PlatformAccount(
            platform_user_id=store_id_from_domain(shop),
            username=shop,
            email=info.get("email"),
            meta={
                "store_domain": shop,
                "shop_id": info.get("id"),
                "shop_name": info.get("name"),
                "connected_via": "oauth",
            },
        )

    async def probe(self, connection: Connection) -> bool:
        return bool(connection.platform_user_id and connection.access_token)

    # ── Assets ──────────────────────────────────────────────────────────

    def _plan_fetches(
        self,
        access_token: str,
        granted_scopes: List[str],
        account: Optional[PlatformAccount],
    ) -> List[SubFetch]:
        if account is None:
            return []
        return [(AssetType.STORE, lambda c: self._store_asset(account))]

    async def _store_asset(self, account: PlatformAccount) -> List[Asset]:
        domain = account.meta.get("store_domain") or account.username or f"{account.platform_user_id}.myshopify.com"
        return [
            Asset(
                id=account.platform_user_id,
                name=account.meta.get("shop_name") or domain,
                type=AssetType.STORE,
                platform=Platform.SHOPIFY,
                metadata={"store_domain": domain},
            )
        ]
