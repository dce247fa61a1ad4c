"""
Tests for the authorization orchestrator and the signed OAuth state.
"""

import json
from base64 import urlsafe_b64decode, urlsafe_b64encode
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import config
from connectors.errors import (
    InvalidOAuthState,
    OAuthDenied,
    OnboardingLinkInvalid,
    TokenExchangeFailed,
)
from connectors.google import ADS_SCOPE, ANALYTICS_SCOPE, GoogleConnector
from connectors.oauth_flow import FlowAttempt, FlowStage, OAuthOrchestrator
from connectors.reconciler import ConnectionReconciler
from connectors.schemas import FlowPurpose, OwnerKind, Platform
from connectors.state import create_state, peek_correlation_id, verify_state

from conftest import recording_transport

GOOGLE_SCOPES = f"openid email {ADS_SCOPE} {ANALYTICS_SCOPE}"


def _id_token(sub):
    payload = urlsafe_b64encode(json.dumps({"sub": sub}).encode()).decode().rstrip("=")
    return f"h.{payload}.s"


def _google_provider(token_status=200, ads_status=200, analytics_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "oauth2.googleapis.com" and path == "/token":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant", "error_description": "Bad code"})
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.fresh",
                    "refresh_token": "1//refresh",
                    "expires_in": 3599,
                    "scope": GOOGLE_SCOPES,
                    "id_token": _id_token("sub-42"),
                },
            )
        if host == "www.googleapis.com" and path == "/oauth2/v2/userinfo":
            return httpx.Response(200, json={"id": "sub-42", "email": "owner@acme.test", "name": "Owner"})
        if host == "googleads.googleapis.com":
            return httpx.Response(ads_status, json={"resourceNames": ["customers/111"]} if ads_status == 200 else {})
        if host == "analyticsadmin.googleapis.com":
            body = {"accountSummaries": [{"propertySummaries": [{"property": "properties/9", "displayName": "Web"}]}]}
            return httpx.Response(analytics_status, json=body if analytics_status == 200 else {})
        return httpx.Response(404, json={})

    return handler


@pytest.fixture
def wire(store, onboarding, registry):
    """Orchestrator wired to in-memory stores and a mocked Google provider."""

    def _wire(handler=None):
        transport, calls = recording_transport(handler or _google_provider())
        registry.register(GoogleConnector(transport=transport))
        reconciler = ConnectionReconciler(store, registry, onboarding=onboarding)
        return OAuthOrchestrator(reconciler, onboarding, registry), calls

    return _wire


def _admin_state(platform=Platform.GOOGLE, **kwargs):
    return create_state(FlowPurpose.ADMIN, platform, "admin-1", OwnerKind.ADMIN, **kwargs)


class TestState:
    def test_round_trip(self):
        state = create_state(
            FlowPurpose.CLIENT, Platform.META, "client-1", OwnerKind.CLIENT, "link-abc", ["ads_read"],
        )
        parsed = verify_state(state, Platform.META)

        assert parsed.owner_id == "client-1"
        assert parsed.owner_kind == OwnerKind.CLIENT
        assert parsed.correlation_id == "link-abc"
        assert parsed.scopes == ["ads_read"]
        assert peek_correlation_id(state) == "link-abc"

    def test_tampered_payload_is_rejected(self):
        state = _admin_state()
        encoded, sig = state.split(".")
        forged = json.loads(urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))
        forged["owner_id"] = "attacker"
        forged_encoded = urlsafe_b64encode(json.dumps(forged).encode()).decode().rstrip("=")

        with pytest.raises(InvalidOAuthState):
            verify_state(f"{forged_encoded}.{sig}")

    def test_expired_state_is_rejected(self):
        with pytest.raises(InvalidOAuthState, match="expired"):
            verify_state(_admin_state(ttl_seconds=-5))

    def test_platform_mismatch_is_rejected(self):
        with pytest.raises(InvalidOAuthState):
            verify_state(_admin_state(Platform.META), Platform.GOOGLE)

    @pytest.mark.parametrize("bad", [None, "", "no-dot", "%%%.abc"])
    def test_garbage_is_rejected(self, bad):
        with pytest.raises(InvalidOAuthState):
            verify_state(bad)
        assert peek_correlation_id(bad) is None


class TestFlowAttempt:
    def test_happy_path(self):
        attempt = FlowAttempt(Platform.GOOGLE)
        for stage in (FlowStage.AWAITING_USER_CONSENT, FlowStage.CALLBACK_RECEIVED, FlowStage.TOKEN_EXCHANGED):
            attempt.advance(stage)
        assert attempt.is_terminal
        assert attempt.history[-1] == FlowStage.TOKEN_EXCHANGED

    def test_illegal_transition_raises(self):
        attempt = FlowAttempt(Platform.GOOGLE)
        with pytest.raises(ValueError):
            attempt.advance(FlowStage.TOKEN_EXCHANGED)

    def test_terminal_stage_accepts_nothing(self):
        attempt = FlowAttempt(Platform.GOOGLE)
        attempt.advance(FlowStage.AWAITING_USER_CONSENT)
        attempt.advance(FlowStage.CALLBACK_RECEIVED)
        attempt.advance(FlowStage.DENIED)
        with pytest.raises(ValueError):
            attempt.advance(FlowStage.FAILED)


class TestStart:
    def test_start_builds_exact_redirect_uri(self, wire, monkeypatch):
        monkeypatch.setattr(config, "app_base_url", "https://portal.acme.test/")
        orchestrator, _ = wire()

        url, state = orchestrator.start(Platform.GOOGLE, FlowPurpose.ADMIN, "admin-1", OwnerKind.ADMIN)
        query = parse_qs(urlparse(url).query)

        assert query["redirect_uri"] == ["https://portal.acme.test/api/v1/oauth/admin/google/callback"]
        assert query["state"] == [state]
        assert verify_state(state).owner_id == "admin-1"

    @pytest.mark.asyncio
    async def test_start_client_uses_link_owner_and_scopes(self, wire, onboarding):
        orchestrator, _ = wire()
        onboarding.add_link(
            "tok-1", client_id="client-9", platforms=["google"], requested_permissions={"google": [ADS_SCOPE]},
        )

        url, state = await orchestrator.start_client(Platform.GOOGLE, "tok-1")
        parsed = verify_state(state)

        assert parsed.owner_id == "client-9"
        assert parsed.purpose == FlowPurpose.CLIENT
        assert parsed.correlation_id == "tok-1"
        assert parse_qs(urlparse(url).query)["scope"] == [ADS_SCOPE]

    @pytest.mark.asyncio
    async def test_start_client_without_client_record_owns_by_request(self, wire, onboarding):
        orchestrator, _ = wire()
        link = onboarding.add_link("tok-2")

        _, state = await orchestrator.start_client(Platform.GOOGLE, "tok-2")

        assert verify_state(state).owner_id == f"req-{link.id}"

    @pytest.mark.asyncio
    async def test_expired_or_unknown_link_is_rejected(self, wire, onboarding):
        orchestrator, _ = wire()
        onboarding.add_link("old", expires_in=-10)
        onboarding.add_link("meta-only", platforms=["meta"])

        for token in ("old", "nope", "meta-only"):
            with pytest.raises(OnboardingLinkInvalid):
                await orchestrator.start_client(Platform.GOOGLE, token)


class TestCallback:
    @pytest.mark.asyncio
    async def test_denial_never_calls_token_endpoint(self, wire, store):
        orchestrator, calls = wire()

        with pytest.raises(OAuthDenied) as info:
            await orchestrator.handle_callback(
                Platform.GOOGLE, None, "access_denied", _admin_state(), error_description="User cancelled",
            )

        assert info.value.reason == "access_denied"
        assert info.value.code == "oauth_denied"
        assert calls == []
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_callback_without_code_or_error_is_a_failure_not_a_denial(self, wire, store):
        orchestrator, calls = wire()
        with pytest.raises(TokenExchangeFailed) as info:
            await orchestrator.handle_callback(Platform.GOOGLE, None, None, _admin_state())
        assert not isinstance(info.value, OAuthDenied)
        assert info.value.code == "oauth_failed"
        assert calls == []
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_bad_state_never_calls_token_endpoint(self, wire, store):
        orchestrator, calls = wire()
        with pytest.raises(InvalidOAuthState):
            await orchestrator.handle_callback(Platform.GOOGLE, "code", None, _admin_state() + "x")
        assert calls == []
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_exchange_failure_saves_nothing(self, wire, store):
        orchestrator, calls = wire(_google_provider(token_status=400))

        with pytest.raises(TokenExchangeFailed) as info:
            await orchestrator.handle_callback(Platform.GOOGLE, "code", None, _admin_state())

        assert info.value.code == "oauth_failed"
        assert len(calls) == 1
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_admin_connect_end_to_end(self, wire, store):
        orchestrator, calls = wire()

        result = await orchestrator.handle_callback(Platform.GOOGLE, "code", None, _admin_state())

        conn = result.connection
        assert result.stage == FlowStage.TOKEN_EXCHANGED
        assert result.fetch_errors == [] and result.secondary_errors == []
        assert conn.owner_id == "admin-1" and conn.owner_kind == OwnerKind.ADMIN
        assert conn.platform_user_id == "sub-42"
        assert conn.platform_username == "owner@acme.test"
        assert conn.access_token == "ya29.fresh"
        assert conn.refresh_token == "1//refresh"
        assert conn.token_expires_at is not None
        assert conn.scopes == GOOGLE_SCOPES.split()
        assert sorted(a.id for a in conn.assets) == ["111", "9"]
        assert store.records[conn.id].is_active

        token_call = calls[0]
        form = parse_qs(token_call.content.decode())
        assert form["redirect_uri"] == [orchestrator.redirect_uri_for(FlowPurpose.ADMIN, Platform.GOOGLE)]
        assert form["grant_type"] == ["authorization_code"]

    @pytest.mark.asyncio
    async def test_whole_asset_failure_still_saves_connection(self, wire, store):
        orchestrator, _ = wire(_google_provider(ads_status=401, analytics_status=401))

        result = await orchestrator.handle_callback(Platform.GOOGLE, "code", None, _admin_state())

        assert result.connection.assets == []
        assert {e.asset_type for e in result.fetch_errors} == {"ads_account", "analytics_property"}
        assert store.records[result.connection.id].is_active

    @pytest.mark.asyncio
    async def test_client_connect_records_onboarding_summary(self, wire, store, onboarding):
        orchestrator, _ = wire()
        link = onboarding.add_link("tok-3", client_id="client-3")
        state = create_state(FlowPurpose.CLIENT, Platform.GOOGLE, "client-3", OwnerKind.CLIENT, "tok-3")

        result = await orchestrator.handle_callback(Platform.GOOGLE, "code", None, state)

        assert result.secondary_errors == []
        summary = onboarding.requests[link.id].platform_connections["google"]
        assert summary["connection_id"] == result.connection.id
        assert summary["asset_count"] == 2
        assert onboarding.requests[link.id].granted_permissions["google"] == GOOGLE_SCOPES.split()

    @pytest.mark.asyncio
    async def test_onboarding_failure_is_isolated(self, wire, store, onboarding):
        orchestrator, _ = wire()
        onboarding.add_link("tok-4", client_id="client-4")
        onboarding.fail_writes = True
        state = create_state(FlowPurpose.CLIENT, Platform.GOOGLE, "client-4", OwnerKind.CLIENT, "tok-4")

        result = await orchestrator.handle_callback(Platform.GOOGLE, "code", None, state)

        assert len(result.secondary_errors) == 1
        assert "onboarding store unavailable" in result.secondary_errors[0]
        assert store.records[result.connection.id].owner_id == "client-4"

    @pytest.mark.asyncio
    async def test_reconnect_same_account_updates_in_place(self, wire, store):
        orchestrator, _ = wire()

        first = await orchestrator.handle_callback(Platform.GOOGLE, "code", None, _admin_state())
        second = await orchestrator.handle_callback(Platform.GOOGLE, "code-2", None, _admin_state())

        assert second.connection.id == first.connection.id
        assert len(store.records) == 1
