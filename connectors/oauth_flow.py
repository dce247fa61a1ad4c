"""
Authorization orchestrator — drives the authorization-code flow for every
platform: authorize URL → provider consent → callback → code exchange →
identity → first asset fetch → reconciler upsert.

The owner of the resulting connection always comes from the signed state,
never from callback query parameters.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from config.settings import config
from connectors.errors import (
    AssetFetchFailed,
    ConnectorError,
    OAuthDenied,
    OnboardingLinkInvalid,
    TokenExchangeFailed,
)
from connectors.reconciler import ConnectionReconciler
from connectors.registry import ConnectorRegistry
from connectors.schemas import Connection, FetchError, FlowPurpose, OwnerKind, Platform
from connectors.scopes import normalize_permissions
from connectors.state import OAuthState, create_state, verify_state
from connectors.token_manager import token_data_from_grant
from database.store import OnboardingLinkRecord, OnboardingStore

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Flow state machine
# ═══════════════════════════════════════════════════════════════════════════════


class FlowStage(str, Enum):
    INITIATED = "initiated"
    AWAITING_USER_CONSENT = "awaiting_user_consent"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    DENIED = "denied"
    FAILED = "failed"


_TRANSITIONS: Dict[FlowStage, Tuple[FlowStage, ...]] = {
    FlowStage.INITIATED: (FlowStage.AWAITING_USER_CONSENT,),
    FlowStage.AWAITING_USER_CONSENT: (FlowStage.CALLBACK_RECEIVED,),
    FlowStage.CALLBACK_RECEIVED: (FlowStage.TOKEN_EXCHANGED, FlowStage.DENIED, FlowStage.FAILED),
    FlowStage.TOKEN_EXCHANGED: (),
    FlowStage.DENIED: (),
    FlowStage.FAILED: (),
}


class FlowAttempt:
    """One pass through the OAuth flow. Terminal stages accept no transition."""

    def __init__(self, platform: Platform, purpose: Optional[FlowPurpose] = None):
        self.platform = platform
        self.purpose = purpose
        self.stage = FlowStage.INITIATED
        self.history: List[FlowStage] = [FlowStage.INITIATED]

    def advance(self, stage: FlowStage) -> None:
        if stage not in _TRANSITIONS[self.stage]:
            raise ValueError(f"Illegal flow transition {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.history.append(stage)

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.stage]


class ConnectResult(BaseModel):
    connection: Connection
    fetch_errors: List[FetchError] = Field(default_factory=list)
    secondary_errors: List[str] = Field(default_factory=list)
    stage: FlowStage = FlowStage.TOKEN_EXCHANGED
    state: Optional[OAuthState] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthOrchestrator:
    def __init__(
        self,
        reconciler: ConnectionReconciler,
        onboarding: Optional[OnboardingStore] = None,
        registry: Optional[ConnectorRegistry] = None,
    ):
        self.reconciler = reconciler
        self.onboarding = onboarding
        self.registry = registry or reconciler.registry

    @staticmethod
    def redirect_uri_for(purpose: FlowPurpose, platform: Platform) -> str:
        """Exact callback URL; must match the provider app registration."""
        return f"{config.app_base_url.rstrip('/')}/api/v1/oauth/{purpose.value}/{platform.value}/callback"

    def build_authorize_url(
        self,
        platform: Platform,
        redirect_uri: str,
        scopes: Optional[List[str]],
        state: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> str:
        return self.registry.get(platform).get_auth_url(redirect_uri, scopes, state, extra_params)

    def start(
        self,
        platform: Platform,
        purpose: FlowPurpose,
        owner_id: str,
        owner_kind: OwnerKind,
        scopes: Optional[List[str]] = None,
        correlation_id: Optional[str] = None,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, str]:
        """Return ``(authorize_url, state)`` for a new flow attempt."""
        connector = self.registry.get(platform)
        requested = list(scopes or connector.scopes)
        state = create_state(purpose, platform, owner_id, owner_kind, correlation_id, requested)
        url = self.build_authorize_url(
            platform, self.redirect_uri_for(purpose, platform), requested, state, extra_params,
        )
        logger.info("Starting %s OAuth for %s %s", platform.value, owner_kind.value, owner_id)
        return url, state

    async def resolve_client_owner(self, link_token: str, platform: Platform) -> Tuple[OnboardingLinkRecord, str]:
        """Validate an onboarding link for ``platform`` and return it with the owning client id."""
        if self.onboarding is None:
            raise RuntimeError("client flows need an onboarding store")
        link = await self.onboarding.get_link_by_token(link_token)
        if link is None or link.is_expired():
            raise OnboardingLinkInvalid("Onboarding link is invalid or has expired")
        if link.platforms and platform.value not in link.platforms:
            raise OnboardingLinkInvalid(f"{platform.value} was not requested by this onboarding link")

        owner_id = link.client_id
        if owner_id is None:
            owner_id = (await self.onboarding.get_or_create_request_for_link(link)).client_id
        return link, owner_id

    async def start_client(
        self,
        platform: Platform,
        link_token: str,
        extra_params: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, str]:
        """
        Start a client flow from an onboarding link.

        The owner is the link's client, or the link's onboarding request when
        no client record exists yet.  Scopes come from the link's requested
        permissions for this platform.
        """
        link, owner_id = await self.resolve_client_owner(link_token, platform)
        requested = normalize_permissions(link.requested_permissions).get(platform.value) or None
        return self.start(
            platform,
            FlowPurpose.CLIENT,
            owner_id,
            OwnerKind.CLIENT,
            scopes=requested,
            correlation_id=link_token,
            extra_params=extra_params,
        )

    async def handle_callback(
        self,
        platform: Platform,
        code: Optional[str],
        error: Optional[str],
        state: Optional[str],
        extra_params: Optional[Dict[str, str]] = None,
        error_description: str = "",
    ) -> ConnectResult:
        """
        Consume the provider redirect.

        Denials never reach the token endpoint.  Token and identity failures
        propagate; a whole-fetch asset failure is recorded and the connection
        is saved with no assets.  Onboarding bookkeeping is best-effort and
        reported in ``secondary_errors``.
        """
        attempt = FlowAttempt(platform)
        attempt.advance(FlowStage.AWAITING_USER_CONSENT)
        attempt.advance(FlowStage.CALLBACK_RECEIVED)

        if not code and error:
            attempt.advance(FlowStage.DENIED)
            logger.info("%s authorization denied: %s %s", platform.value, error, error_description)
            raise OAuthDenied(platform.value, error, error_description)
        if not code:
            # Not a denial: the redirect is malformed
            attempt.advance(FlowStage.FAILED)
            logger.warning("%s callback carried neither a code nor an error", platform.value)
            raise TokenExchangeFailed(platform.value, "callback carried neither a code nor an error")

        try:
            ctx = verify_state(state, platform)
            attempt.purpose = ctx.purpose
            connector = self.registry.get(platform)
            grant = await connector.exchange_code(code, self.redirect_uri_for(ctx.purpose, platform), extra_params)
            account = await connector.fetch_account(grant, extra_params)
        except ConnectorError:
            attempt.advance(FlowStage.FAILED)
            raise
        attempt.advance(FlowStage.TOKEN_EXCHANGED)

        scopes = await connector.resolve_granted_scopes(grant, ctx.scopes or connector.scopes)
        try:
            result = await connector.fetch_assets(grant.access_token, scopes, account)
            assets, fetch_errors = result.assets, list(result.errors)
        except AssetFetchFailed as exc:
            logger.warning("%s initial asset fetch failed, saving without assets: %s", platform.value, exc)
            assets = []
            fetch_errors = list(exc.errors) or [
                FetchError(platform=platform, asset_type=exc.asset_type, cause=exc.cause, status_code=exc.status_code)
            ]

        connection = await self.reconciler.upsert(
            ctx.owner_id,
            ctx.owner_kind,
            platform,
            account.platform_user_id,
            token_data_from_grant(grant, scopes, account),
            assets,
        )

        secondary_errors: List[str] = []
        if ctx.purpose == FlowPurpose.CLIENT and ctx.correlation_id:
            secondary_errors = await self.record_onboarding(ctx.correlation_id, connection)

        return ConnectResult(
            connection=connection,
            fetch_errors=fetch_errors,
            secondary_errors=secondary_errors,
            stage=attempt.stage,
            state=ctx,
        )

    async def record_onboarding(self, link_token: str, connection: Connection) -> List[str]:
        """Write the connection summary onto the onboarding request; never raises."""
        if self.onboarding is None:
            return []
        summary = {
            "connection_id": connection.id,
            "platform_user_id": connection.platform_user_id,
            "platform_username": connection.platform_username,
            "asset_count": len(connection.assets),
            "assets": [{"id": a.id, "name": a.name, "type": a.type.value} for a in connection.assets],
            "connected_at": connection.updated_at.isoformat(),
        }
        try:
            link = await self.onboarding.get_link_by_token(link_token)
            if link is None:
                raise OnboardingLinkInvalid("Onboarding link no longer exists")
            await self.onboarding.record_platform_connection(link, connection.platform, summary, connection.scopes)
        except ConnectorError as exc:
            logger.warning(
                "Could not record %s connection %s on onboarding request: %s",
                connection.platform.value, connection.id, exc,
            )
            return [str(exc)]
        return []
