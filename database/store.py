"""
Persistence collaborators for the connection engine.

The engine only talks to the abstract ``ConnectionStore`` / ``OnboardingStore``
interfaces: a keyed record service with read-your-writes consistency and no
multi-record transactions.  The SQLAlchemy implementations below encrypt
tokens on the way in and decrypt them on the way out; every database error
surfaces as ``PersistenceError``.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import decrypt_token, encrypt_token
from connectors.errors import PersistenceError
from connectors.scopes import normalize_permissions
from connectors.schemas import Asset, Connection, OwnerKind, Platform, RepairScope
from database.models import OnboardingLink, OnboardingRequest, PlatformConnection

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without tz support hand back naive UTC datetimes."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Onboarding records (owned by the portal, read/written here)
# ═══════════════════════════════════════════════════════════════════════════════


class OnboardingLinkRecord(BaseModel):
    id: str
    admin_id: str
    client_id: Optional[str] = None
    token: str
    platforms: List[str] = Field(default_factory=list)
    requested_permissions: Dict[str, List[str]] = Field(default_factory=dict)
    expires_at: datetime
    status: str = "pending"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class OnboardingRequestRecord(BaseModel):
    id: str
    link_id: str
    client_id: Optional[str] = None
    granted_permissions: Dict[str, List[str]] = Field(default_factory=dict)
    platform_connections: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    status: str = "in_progress"


# ═══════════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionStore(ABC):
    @abstractmethod
    async def get_connection(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        platform: Platform,
        platform_user_id: Optional[str] = None,
    ) -> Optional[Connection]:
        """
        Exact identity lookup when ``platform_user_id`` is given, otherwise
        the owner's current active connection for the platform.
        """
        ...

    @abstractmethod
    async def get_connection_by_id(self, connection_id: str) -> Optional[Connection]:
        ...

    @abstractmethod
    async def put_connection(self, connection: Connection) -> Connection:
        """Insert or wholesale-replace the record with ``connection.id``."""
        ...

    @abstractmethod
    async def list_connections(self, scope: RepairScope, *, active_only: bool = True) -> List[Connection]:
        ...

    @abstractmethod
    async def find_active_by_platform_user_id(self, platform: Platform, platform_user_id: str) -> List[Connection]:
        ...

    @abstractmethod
    async def delete_owner_connections(self, owner_id: str, owner_kind: OwnerKind) -> int:
        """Hard delete, only used when the owner account itself is deleted."""
        ...


class OnboardingStore(ABC):
    @abstractmethod
    async def get_link_by_token(self, token: str) -> Optional[OnboardingLinkRecord]:
        ...

    @abstractmethod
    async def get_or_create_request_for_link(self, link: OnboardingLinkRecord) -> OnboardingRequestRecord:
        ...

    @abstractmethod
    async def record_platform_connection(
        self,
        link: OnboardingLinkRecord,
        platform: Platform,
        summary: Dict[str, Any],
        granted_scopes: List[str],
    ) -> OnboardingRequestRecord:
        ...

    @abstractmethod
    async def list_completed_client_ids(self, admin_id: Optional[str] = None) -> List[str]:
        ...

    @abstractmethod
    async def list_client_ids_for_admin(self, admin_id: str) -> List[str]:
        """Clients reached through any of the admin's onboarding links."""
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementations
# ═══════════════════════════════════════════════════════════════════════════════


def _row_to_connection(row: PlatformConnection) -> Connection:
    return Connection(
        id=row.id,
        owner_id=row.owner_id,
        owner_kind=OwnerKind(row.owner_kind),
        platform=Platform(row.platform),
        platform_user_id=row.platform_user_id,
        platform_username=row.platform_username,
        access_token=decrypt_token(row.access_token) or "",
        refresh_token=decrypt_token(row.refresh_token),
        token_expires_at=_aware(row.token_expires_at),
        scopes=list(row.scopes or []),
        assets=[Asset.model_validate(a) for a in (row.assets or [])],
        provider_meta=dict(row.provider_meta or {}),
        is_active=bool(row.is_active),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _apply_connection(row: PlatformConnection, conn: Connection) -> None:
    row.owner_id = conn.owner_id
    row.owner_kind = conn.owner_kind.value
    row.platform = conn.platform.value
    row.platform_user_id = conn.platform_user_id
    row.platform_username = conn.platform_username
    row.access_token = encrypt_token(conn.access_token)
    row.refresh_token = encrypt_token(conn.refresh_token)
    row.token_expires_at = conn.token_expires_at
    row.scopes = list(conn.scopes)
    row.assets = [a.model_dump(mode="json") for a in conn.assets]
    row.provider_meta = dict(conn.provider_meta)
    row.is_active = conn.is_active
    row.created_at = conn.created_at
    row.updated_at = conn.updated_at


class SqlConnectionStore(ConnectionStore):
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get_connection(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        platform: Platform,
        platform_user_id: Optional[str] = None,
    ) -> Optional[Connection]:
        stmt = select(PlatformConnection).where(
            PlatformConnection.owner_id == owner_id,
            PlatformConnection.owner_kind == owner_kind.value,
            PlatformConnection.platform == platform.value,
        )
        if platform_user_id is not None:
            stmt = stmt.where(PlatformConnection.platform_user_id == platform_user_id)
        else:
            stmt = stmt.where(PlatformConnection.is_active.is_(True))
        stmt = stmt.order_by(PlatformConnection.updated_at.desc()).limit(1)
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                return _row_to_connection(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"get_connection failed: {exc}") from exc

    async def get_connection_by_id(self, connection_id: str) -> Optional[Connection]:
        try:
            async with self._session_factory() as session:
                row = await session.get(PlatformConnection, connection_id)
                return _row_to_connection(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"get_connection_by_id failed: {exc}") from exc

    async def put_connection(self, connection: Connection) -> Connection:
        try:
            async with self._session_factory() as session:
                row = await session.get(PlatformConnection, connection.id)
                if row is None:
                    row = PlatformConnection(id=connection.id)
                    session.add(row)
                _apply_connection(row, connection)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"put_connection failed: {exc}") from exc
        return connection

    async def list_connections(self, scope: RepairScope, *, active_only: bool = True) -> List[Connection]:
        stmt = select(PlatformConnection)
        if active_only:
            stmt = stmt.where(PlatformConnection.is_active.is_(True))
        if scope.owner_ids is not None:
            stmt = stmt.where(PlatformConnection.owner_id.in_(scope.owner_ids))
        if scope.owner_kind is not None:
            stmt = stmt.where(PlatformConnection.owner_kind == scope.owner_kind.value)
        if scope.platform is not None:
            stmt = stmt.where(PlatformConnection.platform == scope.platform.value)
        if scope.connection_ids is not None:
            stmt = stmt.where(PlatformConnection.id.in_(scope.connection_ids))
        stmt = stmt.order_by(PlatformConnection.created_at.asc())
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_connection(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"list_connections failed: {exc}") from exc

    async def find_active_by_platform_user_id(self, platform: Platform, platform_user_id: str) -> List[Connection]:
        stmt = select(PlatformConnection).where(
            PlatformConnection.platform == platform.value,
            PlatformConnection.platform_user_id == platform_user_id,
            PlatformConnection.is_active.is_(True),
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_connection(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"find_active_by_platform_user_id failed: {exc}") from exc

    async def delete_owner_connections(self, owner_id: str, owner_kind: OwnerKind) -> int:
        stmt = delete(PlatformConnection).where(
            PlatformConnection.owner_id == owner_id,
            PlatformConnection.owner_kind == owner_kind.value,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"delete_owner_connections failed: {exc}") from exc
        logger.info("Deleted %d connections for %s %s", result.rowcount, owner_kind.value, owner_id)
        return result.rowcount or 0


def _row_to_link(row: OnboardingLink) -> OnboardingLinkRecord:
    return OnboardingLinkRecord(
        id=row.id,
        admin_id=row.admin_id,
        client_id=row.client_id,
        token=row.token,
        platforms=list(row.platforms or []),
        requested_permissions=normalize_permissions(row.requested_permissions),
        expires_at=_aware(row.expires_at),
        status=row.status,
    )


def _row_to_request(row: OnboardingRequest) -> OnboardingRequestRecord:
    return OnboardingRequestRecord(
        id=row.id,
        link_id=row.link_id,
        client_id=row.client_id,
        granted_permissions=normalize_permissions(row.granted_permissions),
        platform_connections=dict(row.platform_connections or {}),
        status=row.status,
    )


class SqlOnboardingStore(OnboardingStore):
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get_link_by_token(self, token: str) -> Optional[OnboardingLinkRecord]:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(select(OnboardingLink).where(OnboardingLink.token == token))
                ).scalar_one_or_none()
                return _row_to_link(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"get_link_by_token failed: {exc}") from exc

    async def _request_row(self, session: AsyncSession, link: OnboardingLinkRecord) -> OnboardingRequest:
        row = (
            await session.execute(select(OnboardingRequest).where(OnboardingRequest.link_id == link.id))
        ).scalar_one_or_none()
        if row is None:
            row = OnboardingRequest(
                id=str(uuid.uuid4()),
                link_id=link.id,
                client_id=link.client_id,
                granted_permissions={},
                platform_connections={},
                status="in_progress",
            )
            session.add(row)
            await session.flush()
            if row.client_id is None:
                # No client record yet: the request itself owns the connections
                row.client_id = row.id
        return row

    async def get_or_create_request_for_link(self, link: OnboardingLinkRecord) -> OnboardingRequestRecord:
        try:
            async with self._session_factory() as session:
                row = await self._request_row(session, link)
                await session.commit()
                return _row_to_request(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"get_or_create_request_for_link failed: {exc}") from exc

    async def record_platform_connection(
        self,
        link: OnboardingLinkRecord,
        platform: Platform,
        summary: Dict[str, Any],
        granted_scopes: List[str],
    ) -> OnboardingRequestRecord:
        try:
            async with self._session_factory() as session:
                row = await self._request_row(session, link)
                # Reassign (not mutate) so the JSON columns are flagged dirty
                row.platform_connections = {**(row.platform_connections or {}), platform.value: summary}
                row.granted_permissions = {**(row.granted_permissions or {}), platform.value: list(granted_scopes)}
                row.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return _row_to_request(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"record_platform_connection failed: {exc}") from exc

    async def list_completed_client_ids(self, admin_id: Optional[str] = None) -> List[str]:
        stmt = select(OnboardingRequest.client_id).where(
            OnboardingRequest.status == "completed",
            OnboardingRequest.client_id.is_not(None),
        )
        if admin_id is not None:
            stmt = stmt.join(OnboardingLink, OnboardingRequest.link_id == OnboardingLink.id).where(
                OnboardingLink.admin_id == admin_id
            )
        try:
            async with self._session_factory() as session:
                return list(dict.fromkeys((await session.execute(stmt)).scalars().all()))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"list_completed_client_ids failed: {exc}") from exc

    async def list_client_ids_for_admin(self, admin_id: str) -> List[str]:
        from_links = select(OnboardingLink.client_id).where(
            OnboardingLink.admin_id == admin_id,
            OnboardingLink.client_id.is_not(None),
        )
        from_requests = (
            select(OnboardingRequest.client_id)
            .join(OnboardingLink, OnboardingRequest.link_id == OnboardingLink.id)
            .where(OnboardingLink.admin_id == admin_id, OnboardingRequest.client_id.is_not(None))
        )
        try:
            async with self._session_factory() as session:
                linked = (await session.execute(from_links)).scalars().all()
                requested = (await session.execute(from_requests)).scalars().all()
                return list(dict.fromkeys([*linked, *requested]))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"list_client_ids_for_admin failed: {exc}") from exc
