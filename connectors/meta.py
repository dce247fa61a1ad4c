"""
MetaConnector — Facebook Login + Graph API asset discovery.

Assets: ad accounts, pages, product catalogs, business datasets and
Instagram business accounts.  Pages are read through two Graph edges
(``/me/accounts`` and ``/me?fields=accounts{...}``) because each one
surfaces pages the other sometimes misses; the results are merged and
deduplicated by ``(type, id)``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import config
from connectors.assets import has_scope, has_scope_prefix, normalize_label
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

# Category labels the Graph API has used for plain pages over time
PAGE_CATEGORY_LABELS = frozenset(
    normalize_label(label)
    for label in ("Page", "Facebook Page", "FACEBOOK_PAGE", "FB_PAGE", "Fan Page", "Public Page")
)

_MAX_PAGES = 10


def is_page_entry(entry: Dict[str, Any]) -> bool:
    category = entry.get("category")
    if not category:
        return True
    return normalize_label(str(category)) in PAGE_CATEGORY_LABELS


class MetaConnector(BaseConnector):
    """Connector for Meta (Facebook / Instagram)."""

    @property
    def definition(self) -> PlatformDefinition:
        version = config.meta_graph_version
        return PlatformDefinition(
            platform=Platform.META,
            display_name="Meta (Facebook)",
            default_scopes=(
                "pages_show_list",
                "pages_read_engagement",
                "pages_manage_posts",
                "ads_read",
            ),
            authorize_url=f"https://www.facebook.com/{version}/dialog/oauth",
            token_url=f"https://graph.facebook.com/{version}/oauth/access_token",
            revoke_url=f"https://graph.facebook.com/{version}/me/permissions",
            scope_separator=",",
            icon="📘",
        )

    @property
    def _graph(self) -> str:
        return f"https://graph.facebook.com/{config.meta_graph_version}"

    def is_configured(self) -> bool:
        return bool(config.meta_app_id and config.meta_app_secret)

    def _client_id(self) -> str:
        return config.meta_app_id

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
                self.definition.token_url,
                data={
                    "client_id": config.meta_app_id,
                    "client_secret": config.meta_app_secret,
                    "redirect_uri": redirect_uri,
                    "code": code,
                },
            )
            if not data.get("access_token"):
                raise TokenExchangeFailed("meta", "response did not contain an access_token")

            grant = TokenGrant(
                access_token=data["access_token"],
                expires_in=data.get("expires_in"),
                raw=data,
            )
            return await self._exchange_long_lived(client, grant)

    async def _exchange_long_lived(self, client: httpx.AsyncClient, grant: TokenGrant) -> TokenGrant:
        """Swap a short-lived user token for a ~60 day one (best-effort)."""
        try:
            data = await self._token_request(
                client,
                "GET",
                self.definition.token_url,
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": config.meta_app_id,
                    "client_secret": config.meta_app_secret,
                    "fb_exchange_token": grant.access_token,
                },
            )
        except TokenExchangeFailed as exc:
            logger.warning("Meta long-lived token exchange failed, keeping short-lived token: %s", exc.detail)
            return grant
        if not data.get("access_token"):
            return grant
        return grant.model_copy(
            update={
                "access_token": data["access_token"],
                "expires_in": data.get("expires_in", grant.expires_in),
            }
        )

    async def fetch_account(
        self,
        grant: TokenGrant,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> PlatformAccount:
        async with self._client() as client:
            me = await self._token_request(
                client,
                "GET",
                f"{self._graph}/me",
                params={"fields": "id,name,email"},
                headers=self._bearer(grant.access_token),
            )
        if not me.get("id"):
            raise TokenExchangeFailed("meta", "user info response did not contain an id")
        return PlatformAccount(
            platform_user_id=str(me["id"]),
            username=me.get("name"),
            email=me.get("email"),
            meta={"name": me.get("name"), "email": me.get("email")},
        )

    async def resolve_granted_scopes(self, grant: TokenGrant, requested: List[str]) -> List[str]:
        """Meta's token response has no ``scope``; ask ``/me/permissions`` instead."""
        try:
            async with self._client() as client:
                data = await self._get_json(
                    client,
                    f"{self._graph}/me/permissions",
                    headers=self._bearer(grant.access_token),
                )
        except AssetFetchFailed as exc:
            logger.warning("Meta permission lookup failed, assuming requested scopes: %s", exc.cause)
            return list(requested)
        granted = [
            p["permission"]
            for p in object_rows(data, "data")
            if p.get("status") == "granted" and p.get("permission")
        ]
        return granted or list(requested)

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with self._client() as client:
                resp = await client.delete(
                    f"{self._graph}/me/permissions",
                    headers=self._bearer(access_token),
                )
                return resp.is_success
        except httpx.HTTPError:
            logger.warning("Meta token revocation failed", exc_info=True)
            return False

    async def probe(self, connection: Connection) -> bool:
        return await self._probe(
            f"{self._graph}/me/accounts",
            params={"limit": 1},
            headers=self._bearer(connection.access_token),
        )

    # ── Assets ──────────────────────────────────────────────────────────

    def _plan_fetches(
        self,
        access_token: str,
        granted_scopes: List[str],
        account: Optional[PlatformAccount],
    ) -> List[SubFetch]:
        headers = self._bearer(access_token)
        plan: List[SubFetch] = []
        if has_scope(granted_scopes, "ads_read", "ads_management"):
            plan.append((AssetType.AD_ACCOUNT, lambda c: self._ad_accounts(c, headers)))
        if has_scope_prefix(granted_scopes, "pages_"):
            plan.append((AssetType.PAGE, lambda c: self._pages(c, headers)))
        if has_scope(granted_scopes, "catalog_management"):
            plan.append((AssetType.CATALOG, lambda c: self._catalogs(c, headers)))
        if has_scope(granted_scopes, "business_management"):
            plan.append((AssetType.BUSINESS_DATASET, lambda c: self._businesses(c, headers)))
        if has_scope(granted_scopes, "instagram_basic"):
            plan.append((AssetType.INSTAGRAM_ACCOUNT, lambda c: self._instagram(c, headers)))
        return plan

    async def _collect(
        self,
        client: httpx.AsyncClient,
        url: str,
        asset_type: AssetType,
        headers: Dict[str, str],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """GET a Graph edge and follow ``paging.next`` up to a fixed page count."""
        rows: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        next_params: Optional[Dict[str, Any]] = params
        for _ in range(_MAX_PAGES):
            if not next_url:
                break
            data = await self._get_json(
                client, next_url, asset_type=asset_type, headers=headers, params=next_params,
            )
            rows.extend(object_rows(data, "data"))
            next_url = (data.get("paging") or {}).get("next")
            next_params = None  # the next URL already carries the cursor
        return rows

    def _asset(self, asset_type: AssetType, entry: Dict[str, Any], fallback: str, **metadata: Any) -> Asset:
        asset_id = str(entry["id"])
        return Asset(
            id=asset_id,
            name=entry.get("name") or f"{fallback} {asset_id}",
            type=asset_type,
            platform=Platform.META,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    async def _ad_accounts(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        rows = await self._collect(
            client,
            f"{self._graph}/me/adaccounts",
            AssetType.AD_ACCOUNT,
            headers,
            {"fields": "id,name,account_id,account_status,currency"},
        )
        return [
            self._asset(
                AssetType.AD_ACCOUNT, r, "Ad Account",
                account_id=r.get("account_id"),
                account_status=r.get("account_status"),
                currency=r.get("currency"),
            )
            for r in rows
            if r.get("id")
        ]

    async def _pages(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        entries: List[Dict[str, Any]] = []
        failures: List[AssetFetchFailed] = []

        try:
            entries.extend(
                await self._collect(
                    client,
                    f"{self._graph}/me/accounts",
                    AssetType.PAGE,
                    headers,
                    {"fields": "id,name,category"},
                )
            )
        except AssetFetchFailed as exc:
            failures.append(exc)

        try:
            data = await self._get_json(
                client,
                f"{self._graph}/me",
                asset_type=AssetType.PAGE,
                headers=headers,
                params={"fields": "accounts{id,name,category}"},
            )
            entries.extend(object_rows(data.get("accounts"), "data"))
        except AssetFetchFailed as exc:
            failures.append(exc)

        if len(failures) == 2:
            raise failures[0]
        for exc in failures:
            logger.info("[meta] One page edge failed, using the other: %s", exc.cause)

        pages: List[Asset] = []
        for entry in entries:
            if not entry.get("id"):
                continue
            if not is_page_entry(entry):
                logger.debug("[meta] Skipping non-page account %s (%s)", entry.get("id"), entry.get("category"))
                continue
            pages.append(self._asset(AssetType.PAGE, entry, "Page", category=entry.get("category")))
        return pages

    async def _catalogs(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        catalogs: List[Asset] = []
        primary_error: Optional[AssetFetchFailed] = None
        try:
            data = await self._get_json(
                client,
                f"{self._graph}/me",
                asset_type=AssetType.CATALOG,
                headers=headers,
                params={"fields": "owned_product_catalogs{id,name,business}"},
            )
            for row in object_rows(data.get("owned_product_catalogs"), "data"):
                if row.get("id"):
                    business = row.get("business")
                    business_id = business.get("id") if isinstance(business, dict) else None
                    catalogs.append(
                        self._asset(AssetType.CATALOG, row, "Product Catalog", business_id=business_id)
                    )
        except AssetFetchFailed as exc:
            primary_error = exc

        if catalogs:
            return catalogs

        # Catalogs owned by a Business Manager don't show up on the user node
        try:
            businesses = await self._collect(
                client,
                f"{self._graph}/me/businesses",
                AssetType.CATALOG,
                headers,
                {"fields": "id,owned_product_catalogs{id,name}"},
            )
        except AssetFetchFailed:
            if primary_error is not None:
                raise primary_error
            raise
        for business in businesses:
            for row in object_rows(business.get("owned_product_catalogs"), "data"):
                if row.get("id"):
                    catalogs.append(
                        self._asset(AssetType.CATALOG, row, "Product Catalog", business_id=business.get("id"))
                    )
        return catalogs

    async def _businesses(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        rows = await self._collect(
            client,
            f"{self._graph}/me/businesses",
            AssetType.BUSINESS_DATASET,
            headers,
            {"fields": "id,name"},
        )
        return [self._asset(AssetType.BUSINESS_DATASET, r, "Business") for r in rows if r.get("id")]

    async def _instagram(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> List[Asset]:
        rows = await self._collect(
            client,
            f"{self._graph}/me/accounts",
            AssetType.INSTAGRAM_ACCOUNT,
            headers,
            {"fields": "id,instagram_business_account{id,username,name}"},
        )
        accounts: List[Asset] = []
        for row in rows:
            ig = row.get("instagram_business_account")
            if not isinstance(ig, dict) or not ig.get("id"):
                continue
            entry = {"id": ig["id"], "name": ig.get("username") or ig.get("name")}
            accounts.append(
                self._asset(AssetType.INSTAGRAM_ACCOUNT, entry, "Instagram Account", page_id=row.get("id"))
            )
        return accounts
