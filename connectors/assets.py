"""
Asset normalization helpers shared by every platform connector.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Tuple

from connectors.schemas import Asset

logger = logging.getLogger(__name__)


def dedupe_assets(assets: Iterable[Asset]) -> List[Asset]:
    """
    Collapse assets sharing ``(platform, type, id)``.

    The first occurrence wins and keeps its position; metadata keys that
    only appear on a later duplicate are merged into it so nothing a
    previous query path surfaced is lost.
    """
    seen: Dict[Tuple[str, str, str], Asset] = {}
    order: List[Tuple[str, str, str]] = []
    for asset in assets:
        key = asset.key
        kept = seen.get(key)
        if kept is None:
            seen[key] = asset.model_copy(deep=True)
            order.append(key)
            continue
        missing = {k: v for k, v in asset.metadata.items() if k not in kept.metadata}
        if missing:
            kept.metadata.update(missing)
        if not kept.name and asset.name:
            kept.name = asset.name
    return [seen[k] for k in order]


def count_duplicates(assets: Iterable[Asset]) -> int:
    items = list(assets)
    return len(items) - len({a.key for a in items})


_SEP = re.compile(r"[\s_\-]+")


def normalize_label(label: str) -> str:
    """``"FACEBOOK_PAGE"`` / ``"Facebook Page"`` / ``"facebook-page"`` → ``"facebook page"``."""
    return _SEP.sub(" ", label.strip()).lower()


def scope_name(scope: str) -> str:
    """Google scopes are URLs; compare on their last path segment."""
    return scope.rstrip("/").rsplit("/", 1)[-1]


def has_scope(granted: Iterable[str], *required: str) -> bool:
    """True when any ``required`` scope (full URL or short name) was granted."""
    wanted = {scope_name(r) for r in required}
    return any(scope_name(g) in wanted for g in granted)


def has_scope_prefix(granted: Iterable[str], prefix: str) -> bool:
    return any(scope_name(g).startswith(prefix) for g in granted)
