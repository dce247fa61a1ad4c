"""
SQLAlchemy ORM models for connections and onboarding records.

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class PlatformConnection(Base):
    """One grant of access by one owner (admin or client) to one platform."""

    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "owner_kind", "platform", "platform_user_id",
            name="uq_connection_owner_platform_identity",
        ),
        Index("ix_connection_owner_platform_active", "owner_id", "owner_kind", "platform", "is_active"),
        Index("ix_connection_platform_identity", "platform", "platform_user_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False)
    owner_kind = Column(String(16), nullable=False)
    platform = Column(String(16), nullable=False)
    platform_user_id = Column(String(256), nullable=False)
    platform_username = Column(String(256))
    access_token = Column(Text, nullable=False)      # Fernet ciphertext
    refresh_token = Column(Text)                     # Fernet ciphertext
    token_expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSONType, default=list)
    assets = Column(JSONType, default=list)
    provider_meta = Column(JSONType, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)


class OnboardingLink(Base):
    __tablename__ = "onboarding_links"

    id = Column(String(36), primary_key=True, default=_uuid)
    admin_id = Column(String(64), nullable=False)
    client_id = Column(String(64))
    link_name = Column(String(255))
    token = Column(String(128), unique=True, nullable=False)
    platforms = Column(JSONType, default=list)
    requested_permissions = Column(JSONType, default=dict)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    is_used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)


class OnboardingRequest(Base):
    __tablename__ = "onboarding_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    link_id = Column(String(36), ForeignKey("onboarding_links.id", ondelete="CASCADE"), nullable=False, unique=True)
    client_id = Column(String(64))
    granted_permissions = Column(JSONType, default=dict)
    platform_connections = Column(JSONType, default=dict)
    status = Column(String(16), nullable=False, default="in_progress")
    submitted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)
