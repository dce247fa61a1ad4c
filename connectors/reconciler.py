"""
Connection reconciler — idempotent upsert of connection + asset state and
best-effort repair of drifted connections.

A connection is keyed by ``(owner_id, owner_kind, platform, platform_user_id)``.
Reconnecting with the same external identity updates the record in place;
reconnecting with a different one creates a new record and supersedes
(deactivates) the previous active one for that owner and platform.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import List, Optional

from config.settings import config
from connectors.assets import count_duplicates, dedupe_assets
from connectors.errors import ConnectorError, InvalidShopifyStore
from connectors.registry import ConnectorRegistry
from connectors.schemas import (
    Asset,
    Connection,
    OwnerKind,
    Platform,
    RepairOutcome,
    RepairReport,
    RepairScope,
    RepairStatus,
    TokenData,
    utcnow,
)
from connectors.shopify import MANUAL_SCOPES, validate_collaborator_code, validate_store_domain
from connectors.token_manager import TokenManager
from database.store import ConnectionStore, OnboardingStore

logger = logging.getLogger(__name__)


def _content(connection: Connection) -> dict:
    return connection.model_dump(mode="json", exclude={"updated_at"})


def _same_assets(a: List[Asset], b: List[Asset]) -> bool:
    return [x.model_dump(mode="json") for x in a] == [y.model_dump(mode="json") for y in b]


class ConnectionReconciler:
    def __init__(
        self,
        store: ConnectionStore,
        registry: Optional[ConnectorRegistry] = None,
        *,
        onboarding: Optional[OnboardingStore] = None,
        token_manager: Optional[TokenManager] = None,
    ):
        self.store = store
        self.registry = registry or ConnectorRegistry()
        self.onboarding = onboarding
        self.tokens = token_manager or TokenManager(store, self.registry)

    # ── Upsert ──────────────────────────────────────────────────────────

    async def upsert(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        platform: Platform,
        platform_user_id: str,
        token_data: TokenData,
        assets: List[Asset],
    ) -> Connection:
        """
        Create or update the connection for this external identity.

        Assets are deduplicated before writing.  The record is written with a
        single ``put_connection``; ``updated_at`` only moves when something
        actually changed, so repeating a call with identical inputs is a no-op.
        """
        if not platform_user_id:
            raise ValueError("platform_user_id is required")
        deduped = dedupe_assets(assets)
        existing = await self.store.get_connection(owner_id, owner_kind, platform, platform_user_id)

        if existing is not None:
            candidate = existing.model_copy(
                update={
                    "platform_username": token_data.platform_username or existing.platform_username,
                    "access_token": token_data.access_token,
                    "refresh_token": token_data.refresh_token or existing.refresh_token,
                    "token_expires_at": token_data.expires_at,
                    "scopes": list(token_data.scopes),
                    "assets": deduped,
                    "provider_meta": {**existing.provider_meta, **token_data.provider_meta},
                    "is_active": True,
                }
            )
            if _content(candidate) == _content(existing):
                connection = existing
                logger.debug("Connection %s unchanged", existing.id)
            else:
                connection = candidate.model_copy(update={"updated_at": utcnow()})
                await self.store.put_connection(connection)
                logger.info(
                    "Updated %s connection %s for %s %s (%d assets)",
                    platform.value, connection.id, owner_kind.value, owner_id, len(deduped),
                )
        else:
            now = utcnow()
            connection = Connection(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                owner_kind=owner_kind,
                platform=platform,
                platform_user_id=platform_user_id,
                platform_username=token_data.platform_username,
                access_token=token_data.access_token,
                refresh_token=token_data.refresh_token,
                token_expires_at=token_data.expires_at,
                scopes=list(token_data.scopes),
                assets=deduped,
                provider_meta=dict(token_data.provider_meta),
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            await self.store.put_connection(connection)
            logger.info(
                "Created %s connection %s for %s %s (%d assets)",
                platform.value, connection.id, owner_kind.value, owner_id, len(deduped),
            )

        await self._supersede(connection)
        return connection

    async def _supersede(self, kept: Connection) -> None:
        """Deactivate every other active connection of the owner on this platform."""
        others = await self.store.list_connections(
            RepairScope(owner_ids=[kept.owner_id], owner_kind=kept.owner_kind, platform=kept.platform)
        )
        for other in others:
            if other.id == kept.id or not other.is_active:
                continue
            await self.store.put_connection(other.model_copy(update={"is_active": False, "updated_at": utcnow()}))
            logger.info(
                "Superseded %s connection %s (%s) by %s (%s)",
                kept.platform.value, other.id, other.platform_user_id, kept.id, kept.platform_user_id,
            )

    # ── Shopify manual connect ──────────────────────────────────────────

    async def connect_store(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        store_domain: str,
        collaborator_code: str,
    ) -> Connection:
        """
        Connect a Shopify store by domain + collaborator code (no OAuth).

        A store already actively connected by a different owner is refused.
        """
        domain = validate_store_domain(store_domain)
        code = validate_collaborator_code(collaborator_code)
        connector = self.registry.get(Platform.SHOPIFY)
        account = connector.manual_account(domain)

        holders = await self.store.find_active_by_platform_user_id(Platform.SHOPIFY, account.platform_user_id)
        if any(h.owner_id != owner_id or h.owner_kind != owner_kind for h in holders):
            raise InvalidShopifyStore("This store is already connected to another account")

        result = await connector.fetch_assets(code, MANUAL_SCOPES, account)
        token_data = TokenData(
            access_token=code,
            scopes=list(MANUAL_SCOPES),
            platform_username=account.username,
            provider_meta=account.meta,
        )
        return await self.upsert(
            owner_id, owner_kind, Platform.SHOPIFY, account.platform_user_id, token_data, result.assets,
        )

    # ── Repair ──────────────────────────────────────────────────────────

    async def repair(
        self,
        scope: Optional[RepairScope] = None,
        *,
        concurrency: Optional[int] = None,
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RepairReport:
        """
        Re-fetch and re-upsert every active connection in ``scope``.

        ``deadline`` is a ``time.monotonic()`` timestamp.  Once it passes, or
        ``cancel_event`` is set, no further connection is started; in-flight
        ones finish and the rest are reported as ``skipped``.  Only a failure
        to enumerate connections raises.
        """
        scope = scope or RepairScope()
        connections = await self.store.list_connections(scope)
        report = RepairReport()
        for conn in connections:
            report.outcomes[conn.id] = RepairOutcome(
                connection_id=conn.id, platform=conn.platform, status=RepairStatus.SKIPPED,
            )
        for missing in scope.connection_ids or []:
            if missing not in report.outcomes:
                report.outcomes[missing] = RepairOutcome(connection_id=missing, status=RepairStatus.NOT_FOUND)

        semaphore = asyncio.Semaphore(max(1, concurrency or config.repair_concurrency))

        def should_stop() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and time.monotonic() >= deadline

        async def run(conn: Connection) -> None:
            async with semaphore:
                if should_stop():
                    report.cancelled = True
                    return
                report.outcomes[conn.id] = await self._repair_one(conn)

        await asyncio.gather(*(run(c) for c in connections))
        logger.info("Repair finished: %s", report.summary())
        return report

    async def _repair_one(self, connection: Connection) -> RepairOutcome:
        outcome = RepairOutcome(
            connection_id=connection.id,
            platform=connection.platform,
            status=RepairStatus.FAILED,
            asset_count=len(connection.assets),
            duplicates_removed=count_duplicates(connection.assets),
        )
        try:
            connector = self.registry.get(connection.platform)
            fresh = await self.tokens.ensure_fresh_token(connection)
            result = await connector.fetch_assets(fresh.access_token, fresh.scopes, fresh.account())

            # Keep what we had for types the provider failed to return this time
            failed = set(result.failed_types)
            carried = [a for a in connection.assets if a.type.value in failed]

            token_data = TokenData(
                access_token=fresh.access_token,
                refresh_token=fresh.refresh_token,
                expires_at=fresh.token_expires_at,
                scopes=fresh.scopes,
                platform_username=fresh.platform_username,
                provider_meta=fresh.provider_meta,
            )
            updated = await self.upsert(
                connection.owner_id,
                connection.owner_kind,
                connection.platform,
                connection.platform_user_id,
                token_data,
                result.assets + carried,
            )
        except ConnectorError as exc:
            logger.warning("Repair of %s connection %s failed: %s", connection.platform.value, connection.id, exc)
            outcome.errors.append(str(exc))
            return outcome
        except Exception as exc:
            logger.exception(
                "Repair of %s connection %s failed unexpectedly", connection.platform.value, connection.id,
            )
            outcome.errors.append(f"unexpected error: {exc.__class__.__name__}: {exc}")
            return outcome

        outcome.errors = [f"{e.asset_type}: {e.cause}" for e in result.errors]
        outcome.asset_count = len(updated.assets)
        outcome.status = (
            RepairStatus.UNCHANGED if _same_assets(updated.assets, connection.assets) else RepairStatus.REPAIRED
        )
        return outcome

    async def repair_owner(self, owner_id: str, owner_kind: OwnerKind, **kwargs) -> RepairReport:
        return await self.repair(RepairScope(owner_ids=[owner_id], owner_kind=owner_kind), **kwargs)

    async def repair_completed_onboarding(self, admin_id: Optional[str] = None, **kwargs) -> RepairReport:
        """Repair the connections of every client whose onboarding was completed.

        With ``admin_id`` only that admin's onboarding requests count.
        """
        if self.onboarding is None:
            raise RuntimeError("repair_completed_onboarding needs an onboarding store")
        client_ids = await self.onboarding.list_completed_client_ids(admin_id)
        if not client_ids:
            logger.info("No completed onboarding requests to repair")
            return RepairReport()
        return await self.repair(RepairScope(owner_ids=client_ids, owner_kind=OwnerKind.CLIENT), **kwargs)

    async def repair_for_admin(
        self,
        admin_id: str,
        *,
        owner_kind: Optional[OwnerKind] = None,
        platform: Optional[Platform] = None,
        connection_ids: Optional[List[str]] = None,
        **kwargs,
    ) -> RepairReport:
        """
        Repair the admin's own connections and those of the clients the admin
        onboarded.  Requested ids outside that set are reported ``not_found``.
        """
        if self.onboarding is None:
            raise RuntimeError("repair_for_admin needs an onboarding store")
        narrow = {"platform": platform, "connection_ids": connection_ids}
        scopes = []
        if owner_kind in (None, OwnerKind.ADMIN):
            scopes.append(RepairScope(owner_ids=[admin_id], owner_kind=OwnerKind.ADMIN, **narrow))
        if owner_kind in (None, OwnerKind.CLIENT):
            client_ids = await self.onboarding.list_client_ids_for_admin(admin_id)
            if client_ids:
                scopes.append(RepairScope(owner_ids=client_ids, owner_kind=OwnerKind.CLIENT, **narrow))

        allowed: List[str] = []
        for scope in scopes:
            allowed.extend(c.id for c in await self.store.list_connections(scope))

        report = await self.repair(RepairScope(connection_ids=allowed), **kwargs) if allowed else RepairReport()
        for missing in connection_ids or []:
            if missing not in report.outcomes:
                report.outcomes[missing] = RepairOutcome(connection_id=missing, status=RepairStatus.NOT_FOUND)
        return report
