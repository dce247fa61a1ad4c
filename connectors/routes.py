"""
OAuth API routes — connect / callback for admins and onboarding clients,
Shopify store connect, connection listing, validation, disconnect, repair.

Route prefix: /api/v1/oauth
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from auth.dependencies import get_current_admin_id
from config.settings import config
from connectors.errors import (
    AssetFetchFailed,
    ClientNotFound,
    ConnectionNotFound,
    ConnectorError,
    InvalidOAuthState,
    InvalidShopifyStore,
    OAuthDenied,
    OnboardingLinkInvalid,
    PersistenceError,
    PlatformNotFound,
    TokenExchangeFailed,
)
from connectors.oauth_flow import ConnectResult, OAuthOrchestrator
from connectors.reconciler import ConnectionReconciler
from connectors.registry import ConnectorRegistry
from connectors.schemas import FlowPurpose, OwnerKind, Platform, RepairReport, RepairScope
from connectors.state import peek_correlation_id
from connectors.token_manager import TokenManager
from database.store import ConnectionStore, OnboardingStore, SqlConnectionStore, SqlOnboardingStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

_ERROR_STATUS = {
    PlatformNotFound: status.HTTP_404_NOT_FOUND,
    ConnectionNotFound: status.HTTP_404_NOT_FOUND,
    ClientNotFound: status.HTTP_404_NOT_FOUND,
    OnboardingLinkInvalid: status.HTTP_404_NOT_FOUND,
    InvalidShopifyStore: status.HTTP_400_BAD_REQUEST,
    InvalidOAuthState: status.HTTP_400_BAD_REQUEST,
    OAuthDenied: status.HTTP_400_BAD_REQUEST,
    TokenExchangeFailed: status.HTTP_502_BAD_GATEWAY,
    AssetFetchFailed: status.HTTP_502_BAD_GATEWAY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(exc: ConnectorError) -> HTTPException:
    code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail={"error": exc.code, "message": str(exc)})


# ── Dependencies ───────────────────────────────────────────────────────


def get_connection_store() -> ConnectionStore:
    return SqlConnectionStore()


def get_onboarding_store() -> OnboardingStore:
    return SqlOnboardingStore()


def get_reconciler(
    store: ConnectionStore = Depends(get_connection_store),
    onboarding: OnboardingStore = Depends(get_onboarding_store),
) -> ConnectionReconciler:
    return ConnectionReconciler(store, ConnectorRegistry(), onboarding=onboarding)


def get_orchestrator(
    reconciler: ConnectionReconciler = Depends(get_reconciler),
    onboarding: OnboardingStore = Depends(get_onboarding_store),
) -> OAuthOrchestrator:
    return OAuthOrchestrator(reconciler, onboarding)


def get_token_manager(reconciler: ConnectionReconciler = Depends(get_reconciler)) -> TokenManager:
    return reconciler.tokens


def _platform(platform: str) -> Platform:
    try:
        return Platform(platform.lower())
    except ValueError:
        raise _http_error(PlatformNotFound(platform))


# ── Redirect helpers ───────────────────────────────────────────────────


def _admin_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(f"{config.frontend_url}/admin/settings?{urlencode(params)}", status_code=302)


def _client_redirect(link_token: Optional[str], **params: str) -> RedirectResponse:
    path = f"/onboarding/{link_token}" if link_token else "/onboarding"
    return RedirectResponse(f"{config.frontend_url}{path}?{urlencode(params)}", status_code=302)


def _success_params(platform: str, result: ConnectResult) -> Dict[str, str]:
    params = {"connected": platform}
    if result.fetch_errors:
        params["warning"] = "asset_fetch_partial"
    return params


def _shop_params(shop: Optional[str]) -> Optional[Dict[str, str]]:
    return {"shop": shop} if shop else None


# ── Request bodies ─────────────────────────────────────────────────────


class ShopifyStoreRequest(BaseModel):
    token: str
    store_domain: str
    collaborator_code: str


class RepairRequest(BaseModel):
    owner_kind: Optional[OwnerKind] = None
    platform: Optional[Platform] = None
    connection_ids: Optional[List[str]] = None
    completed_onboarding_only: bool = False
    timeout_seconds: Optional[float] = None


def _report_body(report: RepairReport) -> Dict[str, Any]:
    return {
        "summary": report.summary(),
        "outcomes": [o.model_dump(mode="json") for o in report.outcomes.values()],
    }


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/platforms")
async def list_platforms() -> List[Dict[str, Any]]:
    """Available platforms and whether credentials are configured. No auth."""
    return ConnectorRegistry().list_platforms()


@router.get("/admin/{platform}/connect")
async def admin_connect(
    platform: str,
    shop: Optional[str] = Query(None),
    admin_id: str = Depends(get_current_admin_id),
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    plat = _platform(platform)
    try:
        url, _ = orchestrator.start(
            plat, FlowPurpose.ADMIN, admin_id, OwnerKind.ADMIN, extra_params=_shop_params(shop),
        )
    except ConnectorError as exc:
        raise _http_error(exc)
    return RedirectResponse(url, status_code=302)


@router.get("/admin/{platform}/callback")
async def admin_callback(
    platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: str = Query(""),
    shop: Optional[str] = Query(None),
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    try:
        plat = Platform(platform.lower())
    except ValueError:
        return _admin_redirect(error=PlatformNotFound.code)
    try:
        result = await orchestrator.handle_callback(
            plat, code, error, state, _shop_params(shop), error_description,
        )
    except ConnectorError as exc:
        logger.warning("Admin %s callback failed: %s", platform, exc)
        return _admin_redirect(error=exc.code, platform=plat.value)
    return _admin_redirect(**_success_params(plat.value, result))


@router.get("/client/{platform}/connect")
async def client_connect(
    platform: str,
    token: str = Query(...),
    shop: Optional[str] = Query(None),
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    try:
        plat = Platform(platform.lower())
    except ValueError:
        return _client_redirect(token, error=PlatformNotFound.code)
    try:
        url, _ = await orchestrator.start_client(plat, token, _shop_params(shop))
    except ConnectorError as exc:
        logger.warning("Client %s connect failed: %s", platform, exc)
        return _client_redirect(token, error=exc.code, platform=plat.value)
    return RedirectResponse(url, status_code=302)


@router.get("/client/{platform}/callback")
async def client_callback(
    platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: str = Query(""),
    shop: Optional[str] = Query(None),
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    link_token = peek_correlation_id(state)
    try:
        plat = Platform(platform.lower())
    except ValueError:
        return _client_redirect(link_token, error=PlatformNotFound.code)
    try:
        result = await orchestrator.handle_callback(
            plat, code, error, state, _shop_params(shop), error_description,
        )
    except ConnectorError as exc:
        logger.warning("Client %s callback failed: %s", platform, exc)
        return _client_redirect(link_token, error=exc.code, platform=plat.value)
    if result.secondary_errors:
        logger.warning("Client %s connected with bookkeeping errors: %s", platform, result.secondary_errors)
    return _client_redirect(link_token, **_success_params(plat.value, result))


@router.post("/client/shopify/store")
async def connect_shopify_store(
    body: ShopifyStoreRequest,
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Connect a Shopify store by domain + collaborator code from an onboarding link."""
    try:
        _, owner_id = await orchestrator.resolve_client_owner(body.token, Platform.SHOPIFY)
        connection = await orchestrator.reconciler.connect_store(
            owner_id, OwnerKind.CLIENT, body.store_domain, body.collaborator_code,
        )
    except ConnectorError as exc:
        raise _http_error(exc)
    secondary_errors = await orchestrator.record_onboarding(body.token, connection)
    return {
        "success": True,
        "connection": connection.public_view(),
        "secondary_errors": secondary_errors,
    }


@router.get("/connections")
async def list_connections(
    include_inactive: bool = Query(False),
    admin_id: str = Depends(get_current_admin_id),
    store: ConnectionStore = Depends(get_connection_store),
) -> List[Dict[str, Any]]:
    """The authenticated admin's own platform connections (no tokens)."""
    try:
        connections = await store.list_connections(
            RepairScope(owner_ids=[admin_id], owner_kind=OwnerKind.ADMIN),
            active_only=not include_inactive,
        )
    except ConnectorError as exc:
        raise _http_error(exc)
    return [c.public_view() for c in connections]


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    admin_id: str = Depends(get_current_admin_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, Any]:
    """Disconnect (soft delete) and revoke an admin connection."""
    try:
        await tokens.disconnect(connection_id, owner_id=admin_id, owner_kind=OwnerKind.ADMIN)
    except ConnectorError as exc:
        raise _http_error(exc)
    return {"status": "disconnected", "connection_id": connection_id}


@router.post("/connections/{connection_id}/validate")
async def validate_connection(
    connection_id: str,
    admin_id: str = Depends(get_current_admin_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, Any]:
    """Probe a connection; a rejected token deactivates it."""
    try:
        valid = await tokens.check_validity(connection_id, owner_id=admin_id, owner_kind=OwnerKind.ADMIN)
    except ConnectorError as exc:
        raise _http_error(exc)
    return {"connection_id": connection_id, "valid": valid}


@router.post("/repair")
async def repair_connections(
    body: RepairRequest,
    admin_id: str = Depends(get_current_admin_id),
    reconciler: ConnectionReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Re-fetch assets for the admin's own and onboarded clients' connections."""
    deadline = time.monotonic() + body.timeout_seconds if body.timeout_seconds else None
    logger.info("Repair requested by admin %s: %s", admin_id, body.model_dump(mode="json"))
    try:
        if body.completed_onboarding_only:
            report = await reconciler.repair_completed_onboarding(admin_id, deadline=deadline)
        else:
            report = await reconciler.repair_for_admin(
                admin_id,
                owner_kind=body.owner_kind,
                platform=body.platform,
                connection_ids=body.connection_ids,
                deadline=deadline,
            )
    except ConnectorError as exc:
        raise _http_error(exc)
    return _report_body(report)


@router.post("/clients/{client_id}/repair")
async def repair_client(
    client_id: str,
    admin_id: str = Depends(get_current_admin_id),
    reconciler: ConnectionReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Repair every active connection of one client the admin onboarded."""
    try:
        if client_id not in await reconciler.onboarding.list_client_ids_for_admin(admin_id):
            raise ClientNotFound(client_id)
        report = await reconciler.repair_owner(client_id, OwnerKind.CLIENT)
    except ConnectorError as exc:
        raise _http_error(exc)
    return _report_body(report)
