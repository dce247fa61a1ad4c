"""
Shared fixtures: in-memory stores, recording mock transports, a fresh
connector registry per test.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from config.settings import config
from connectors import encryption
from connectors.errors import PersistenceError
from connectors.registry import ConnectorRegistry
from connectors.schemas import Asset, AssetType, Connection, OwnerKind, Platform, RepairScope
from database.store import (
    ConnectionStore,
    OnboardingLinkRecord,
    OnboardingRequestRecord,
    OnboardingStore,
)


class InMemoryConnectionStore(ConnectionStore):
    """Dict-backed ConnectionStore; every write is recorded in ``puts``."""

    def __init__(self):
        self.records: Dict[str, Connection] = {}
        self.puts: List[Connection] = []
        self.fail_list = False

    async def get_connection(self, owner_id, owner_kind, platform, platform_user_id=None):
        matches = [
            c for c in self.records.values()
            if c.owner_id == owner_id and c.owner_kind == owner_kind and c.platform == platform
        ]
        if platform_user_id is not None:
            matches = [c for c in matches if c.platform_user_id == platform_user_id]
        else:
            matches = [c for c in matches if c.is_active]
        matches.sort(key=lambda c: c.updated_at, reverse=True)
        return matches[0].model_copy(deep=True) if matches else None

    async def get_connection_by_id(self, connection_id):
        conn = self.records.get(connection_id)
        return conn.model_copy(deep=True) if conn else None

    async def put_connection(self, connection):
        self.records[connection.id] = connection.model_copy(deep=True)
        self.puts.append(connection.model_copy(deep=True))
        return connection

    async def list_connections(self, scope: RepairScope, *, active_only=True):
        if self.fail_list:
            raise PersistenceError("store unavailable")
        out = []
        for conn in self.records.values():
            if active_only and not conn.is_active:
                continue
            if scope.owner_ids is not None and conn.owner_id not in scope.owner_ids:
                continue
            if scope.owner_kind is not None and conn.owner_kind != scope.owner_kind:
                continue
            if scope.platform is not None and conn.platform != scope.platform:
                continue
            if scope.connection_ids is not None and conn.id not in scope.connection_ids:
                continue
            out.append(conn.model_copy(deep=True))
        return out

    async def find_active_by_platform_user_id(self, platform, platform_user_id):
        return [
            c.model_copy(deep=True) for c in self.records.values()
            if c.platform == platform and c.platform_user_id == platform_user_id and c.is_active
        ]

    async def delete_owner_connections(self, owner_id, owner_kind):
        doomed = [k for k, c in self.records.items() if c.owner_id == owner_id and c.owner_kind == owner_kind]
        for key in doomed:
            del self.records[key]
        return len(doomed)


class InMemoryOnboardingStore(OnboardingStore):
    def __init__(self):
        self.links: Dict[str, OnboardingLinkRecord] = {}
        self.requests: Dict[str, OnboardingRequestRecord] = {}
        self.fail_writes = False

    def add_link(
        self,
        token: str = "link-token",
        client_id: Optional[str] = None,
        platforms: Optional[List[str]] = None,
        requested_permissions: Optional[Dict[str, List[str]]] = None,
        expires_in: int = 3600,
        admin_id: str = "admin-1",
    ) -> OnboardingLinkRecord:
        link = OnboardingLinkRecord(
            id=f"link-{token}",
            admin_id=admin_id,
            client_id=client_id,
            token=token,
            platforms=platforms or [],
            requested_permissions=requested_permissions or {},
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
        self.links[token] = link
        return link

    async def get_link_by_token(self, token):
        return self.links.get(token)

    async def get_or_create_request_for_link(self, link):
        request = self.requests.get(link.id)
        if request is None:
            request_id = f"req-{link.id}"
            request = OnboardingRequestRecord(id=request_id, link_id=link.id, client_id=link.client_id or request_id)
            self.requests[link.id] = request
        return request

    async def record_platform_connection(self, link, platform, summary, granted_scopes):
        if self.fail_writes:
            raise PersistenceError("onboarding store unavailable")
        request = await self.get_or_create_request_for_link(link)
        request.platform_connections[platform.value] = summary
        request.granted_permissions[platform.value] = list(granted_scopes)
        return request

    def _admin_of(self, link_id):
        return next((link.admin_id for link in self.links.values() if link.id == link_id), None)

    async def list_completed_client_ids(self, admin_id=None):
        return [
            r.client_id for r in self.requests.values()
            if r.status == "completed" and r.client_id and admin_id in (None, self._admin_of(r.link_id))
        ]

    async def list_client_ids_for_admin(self, admin_id):
        ids = [link.client_id for link in self.links.values() if link.admin_id == admin_id and link.client_id]
        ids += [r.client_id for r in self.requests.values() if self._admin_of(r.link_id) == admin_id and r.client_id]
        return list(dict.fromkeys(ids))


Handler = Callable[[httpx.Request], httpx.Response]


def recording_transport(handler: Handler) -> Tuple[httpx.MockTransport, List[httpx.Request]]:
    """MockTransport that remembers every request it served."""
    calls: List[httpx.Request] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request)

    return httpx.MockTransport(_handle), calls


@pytest.fixture(autouse=True)
def _plaintext_tokens(monkeypatch):
    monkeypatch.setattr(config, "token_encryption_key", "")
    encryption.reset()
    yield
    encryption.reset()


@pytest.fixture
def registry():
    ConnectorRegistry.reset()
    yield ConnectorRegistry()
    ConnectorRegistry.reset()


@pytest.fixture
def store():
    return InMemoryConnectionStore()


@pytest.fixture
def onboarding():
    return InMemoryOnboardingStore()


@pytest.fixture
def make_asset():
    def _make(asset_id: str, asset_type: AssetType = AssetType.ADS_ACCOUNT, platform: Platform = Platform.GOOGLE, **metadata):
        return Asset(id=asset_id, name=f"Asset {asset_id}", type=asset_type, platform=platform, metadata=metadata)

    return _make


@pytest.fixture
def make_connection():
    def _make(**overrides) -> Connection:
        fields = dict(
            id=str(uuid.uuid4()),
            owner_id="client-1",
            owner_kind=OwnerKind.CLIENT,
            platform=Platform.GOOGLE,
            platform_user_id="g-user-1",
            platform_username="owner@example.com",
            access_token="access-1",
            refresh_token="refresh-1",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes=[],
            assets=[],
        )
        fields.update(overrides)
        return Connection(**fields)

    return _make
