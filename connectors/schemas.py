"""
Pydantic schemas shared by the connection engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Platforms & owners
# ═══════════════════════════════════════════════════════════════════════════════


class Platform(str, Enum):
    META = "meta"
    GOOGLE = "google"
    TIKTOK = "tiktok"
    SHOPIFY = "shopify"


class OwnerKind(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"


class FlowPurpose(str, Enum):
    """Who started the OAuth flow: an admin for itself, or a client via a link."""

    ADMIN = "admin"
    CLIENT = "client"


class PlatformDefinition(BaseModel):
    """Static, immutable per-platform metadata."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    display_name: str
    default_scopes: Tuple[str, ...]
    authorize_url: str
    token_url: str
    revoke_url: Optional[str] = None
    scope_separator: str = " "
    icon: str = "🔗"


# ═══════════════════════════════════════════════════════════════════════════════
# Assets
# ═══════════════════════════════════════════════════════════════════════════════


class AssetType(str, Enum):
    # Meta
    AD_ACCOUNT = "ad_account"
    PAGE = "page"
    CATALOG = "catalog"
    BUSINESS_DATASET = "business_dataset"
    INSTAGRAM_ACCOUNT = "instagram_account"
    # Google
    ADS_ACCOUNT = "ads_account"
    ANALYTICS_PROPERTY = "analytics_property"
    SEARCH_CONSOLE = "search_console"
    TAG_MANAGER = "tag_manager"
    BUSINESS_PROFILE = "business_profile"
    MERCHANT_CENTER = "merchant_center"
    # TikTok
    ACCOUNT = "account"
    # Shopify
    STORE = "store"


class Asset(BaseModel):
    """A capability-bearing resource inside a platform account."""

    id: str
    name: str
    type: AssetType
    platform: Platform
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.platform.value, self.type.value, self.id)


class FetchError(BaseModel):
    """A recorded, non-fatal failure of one asset-type sub-fetch."""

    platform: Platform
    asset_type: Optional[str] = None
    cause: str
    status_code: Optional[int] = None


class AssetFetchResult(BaseModel):
    assets: List[Asset] = Field(default_factory=list)
    errors: List[FetchError] = Field(default_factory=list)
    attempted: List[AssetType] = Field(default_factory=list)

    @property
    def failed_types(self) -> List[str]:
        return [e.asset_type for e in self.errors if e.asset_type]


# ═══════════════════════════════════════════════════════════════════════════════
# Tokens & connections
# ═══════════════════════════════════════════════════════════════════════════════


class TokenData(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    platform_username: Optional[str] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


class PlatformAccount(BaseModel):
    """The external identity a token was issued for."""

    platform_user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class TokenGrant(BaseModel):
    """Output of a successful code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scopes: List[str] = Field(default_factory=list)
    id_token: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class Connection(BaseModel):
    id: str
    owner_id: str
    owner_kind: OwnerKind
    platform: Platform
    platform_user_id: str
    platform_username: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    assets: List[Asset] = Field(default_factory=list)
    provider_meta: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def account(self) -> PlatformAccount:
        return PlatformAccount(
            platform_user_id=self.platform_user_id,
            username=self.platform_username,
            meta=self.provider_meta,
        )

    def public_view(self) -> Dict[str, Any]:
        """Serializable summary with tokens stripped."""
        return {
            "connection_id": self.id,
            "owner_id": self.owner_id,
            "owner_kind": self.owner_kind.value,
            "platform": self.platform.value,
            "platform_user_id": self.platform_user_id,
            "platform_username": self.platform_username,
            "scopes": list(self.scopes),
            "assets": [a.model_dump(mode="json") for a in self.assets],
            "is_active": self.is_active,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# Repair
# ═══════════════════════════════════════════════════════════════════════════════


class RepairScope(BaseModel):
    """Selects the active connections a repair pass touches. Empty = all."""

    owner_ids: Optional[List[str]] = None
    owner_kind: Optional[OwnerKind] = None
    platform: Optional[Platform] = None
    connection_ids: Optional[List[str]] = None


class RepairStatus(str, Enum):
    REPAIRED = "repaired"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"


class RepairOutcome(BaseModel):
    connection_id: str
    platform: Optional[Platform] = None
    status: RepairStatus
    asset_count: int = 0
    duplicates_removed: int = 0
    errors: List[str] = Field(default_factory=list)


class RepairReport(BaseModel):
    outcomes: Dict[str, RepairOutcome] = Field(default_factory=dict)
    cancelled: bool = False

    def count(self, status: RepairStatus) -> int:
        return sum(1 for o in self.outcomes.values() if o.status == status)

    def summary(self) -> Dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "cancelled": self.cancelled,
            **{s.value: self.count(s) for s in RepairStatus},
        }
