"""
Token lifecycle — expiry, refresh, validity probe, disconnect.

This is the single place that decides whether a stored token can still be
used.  Persistence goes through the injected ``ConnectionStore``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx

from config.settings import config
from connectors.errors import ConnectionNotFound, ConnectorError
from connectors.registry import ConnectorRegistry
from connectors.schemas import Connection, OwnerKind, PlatformAccount, TokenData, TokenGrant, utcnow
from database.store import ConnectionStore

logger = logging.getLogger(__name__)


def compute_expires_at(expires_in: Optional[int], now: Optional[datetime] = None) -> Optional[datetime]:
    """``expires_in`` seconds from now, or None when the provider gave no lifetime."""
    if expires_in is None:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=int(expires_in))


def is_expired(
    expires_at: Optional[datetime],
    *,
    buffer_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Expired, or about to expire within the configured buffer. No expiry = never."""
    if expires_at is None:
        return False
    buffer = config.token_expiry_buffer_seconds if buffer_seconds is None else buffer_seconds
    return expires_at <= (now or datetime.now(timezone.utc)) + timedelta(seconds=buffer)


def token_data_from_grant(
    grant: TokenGrant,
    scopes: List[str],
    account: Optional[PlatformAccount] = None,
) -> TokenData:
    return TokenData(
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=compute_expires_at(grant.expires_in),
        scopes=list(scopes),
        platform_username=account.username if account else None,
        provider_meta=dict(account.meta) if account else {},
    )


class TokenManager:
    def __init__(self, store: ConnectionStore, registry: Optional[ConnectorRegistry] = None):
        self.store = store
        self.registry = registry or ConnectorRegistry()

    async def ensure_fresh_token(self, connection: Connection) -> Connection:
        """
        Return ``connection`` with a usable access token.

        An expired token is refreshed when the platform supports it and a
        refresh token is stored; the new token is persisted before returning.
        Refresh failures raise ``TokenExchangeFailed``.
        """
        if not is_expired(connection.token_expires_at):
            return connection

        connector = self.registry.get(connection.platform)
        if not connector.supports_refresh or not connection.refresh_token:
            logger.info(
                "%s token for connection %s expired and cannot be refreshed",
                connection.platform.value, connection.id,
            )
            return connection

        grant = await connector.refresh_access_token(connection.refresh_token)
        refreshed = connection.model_copy(
            update={
                "access_token": grant.access_token,
                # Some providers rotate refresh tokens, others omit them
                "refresh_token": grant.refresh_token or connection.refresh_token,
                "token_expires_at": compute_expires_at(grant.expires_in),
                "updated_at": utcnow(),
            }
        )
        await self.store.put_connection(refreshed)
        logger.info("Refreshed %s token for connection %s", connection.platform.value, connection.id)
        return refreshed

    async def is_valid(self, connection: Connection) -> bool:
        """Live probe; transient provider errors raise ``AssetFetchFailed``."""
        if not connection.is_active:
            return False
        connector = self.registry.get(connection.platform)
        return await connector.probe(connection)

    async def _owned_connection(
        self,
        connection_id: str,
        owner_id: Optional[str],
        owner_kind: Optional[OwnerKind],
    ) -> Connection:
        connection = await self.store.get_connection_by_id(connection_id)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        if owner_id is not None and connection.owner_id != owner_id:
            raise ConnectionNotFound(connection_id)
        if owner_kind is not None and connection.owner_kind != owner_kind:
            raise ConnectionNotFound(connection_id)
        return connection

    async def check_validity(
        self,
        connection_id: str,
        owner_id: Optional[str] = None,
        owner_kind: Optional[OwnerKind] = None,
    ) -> bool:
        """
        Probe a stored connection and deactivate it when the token is rejected.

        Ownership is checked the same way as in :meth:`disconnect`.
        """
        connection = await self._owned_connection(connection_id, owner_id, owner_kind)

        valid = await self.is_valid(connection)
        if not valid and connection.is_active:
            await self.store.put_connection(
                connection.model_copy(update={"is_active": False, "updated_at": utcnow()})
            )
            logger.warning(
                "Deactivated %s connection %s after failed validity probe",
                connection.platform.value, connection.id,
            )
        return valid

    async def disconnect(
        self,
        connection_id: str,
        owner_id: Optional[str] = None,
        owner_kind: Optional[OwnerKind] = None,
    ) -> Connection:
        """
        Soft-delete a connection and revoke its token at the provider.

        When ``owner_id`` is given the connection must belong to that owner,
        otherwise it is reported as not found.
        """
        connection = await self._owned_connection(connection_id, owner_id, owner_kind)

        connector = self.registry.get(connection.platform)
        try:
            revoked = await connector.revoke_token(connection.access_token)
        except (ConnectorError, httpx.HTTPError) as exc:
            revoked = False
            logger.warning("Revocation of %s connection %s failed: %s", connection.platform.value, connection_id, exc)

        disconnected = connection.model_copy(update={"is_active": False, "updated_at": utcnow()})
        await self.store.put_connection(disconnected)
        logger.info(
            "Disconnected %s connection %s (revoked=%s)",
            connection.platform.value, connection_id, revoked,
        )
        return disconnected

    async def delete_owner_connections(self, owner_id: str, owner_kind: OwnerKind) -> int:
        return await self.store.delete_owner_connections(owner_id, owner_kind)
