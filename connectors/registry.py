"""
ConnectorRegistry — discovers and provides access to all platform connectors.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from connectors.base import BaseConnector
from connectors.errors import PlatformNotFound
from connectors.google import GoogleConnector
from connectors.meta import MetaConnector
from connectors.schemas import Platform, PlatformDefinition
from connectors.shopify import ShopifyConnector
from connectors.tiktok import TikTokConnector

logger = logging.getLogger(__name__)


def _default_connectors() -> List[BaseConnector]:
    # ── All known connectors, add new ones here ─────────────────────────
    return [
        MetaConnector(),
        GoogleConnector(),
        TikTokConnector(),
        ShopifyConnector(),
    ]


class ConnectorRegistry:
    """Singleton registry for all platform connectors."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {c.platform.value: c for c in _default_connectors()}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests swap in connectors with mock transports)."""
        cls._instance = None

    def discover(self) -> None:
        """Log which connectors have credentials configured."""
        if self._discovered:
            return
        for conn in self._connectors.values():
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.platform.value)
            else:
                logger.warning(
                    "Connector %s not configured (missing client_id/secret)",
                    conn.platform.value,
                )
        self._discovered = True

    def register(self, connector: BaseConnector) -> None:
        self._connectors[connector.platform.value] = connector

    def get(self, platform: str | Platform) -> BaseConnector:
        """Get a connector by platform id; raises ``PlatformNotFound``."""
        key = platform.value if isinstance(platform, Platform) else str(platform).lower()
        connector = self._connectors.get(key)
        if connector is None:
            raise PlatformNotFound(str(platform))
        return connector

    def definition(self, platform: str | Platform) -> PlatformDefinition:
        """Pure lookup of the static platform metadata."""
        return self.get(platform).definition

    def list_platforms(self) -> List[Dict[str, object]]:
        """Return info about all available connectors."""
        return [
            {
                "platform": c.platform.value,
                "display_name": c.display_name,
                "icon": c.icon,
                "default_scopes": c.scopes,
                "configured": c.is_configured(),
            }
            for c in self._connectors.values()
        ]

    def list_configured(self) -> List[str]:
        """Return ids of configured connectors."""
        return [p for p, c in self._connectors.items() if c.is_configured()]
