"""
Scope catalogue and the ``platform:scope`` boundary encoding.

Inside the engine granted permissions are always a ``platform → [scope]``
mapping.  Older onboarding records and form posts carry them as flat
``"meta:ads_read"`` strings; those are parsed here and nowhere else.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping

from connectors.schemas import Platform

SCOPE_DESCRIPTIONS: Dict[str, Dict[str, str]] = {
    Platform.GOOGLE.value: {
        "openid": "Sign in with Google",
        "email": "Email address",
        "profile": "Basic profile (name, picture)",
        "https://www.googleapis.com/auth/adwords": "Google Ads Account - Manage ad campaigns and billing",
        "https://www.googleapis.com/auth/analytics.readonly": "Google Analytics - Read website and app analytics data",
        "https://www.googleapis.com/auth/business.manage": "Google Business Profile - Manage business listings and reviews",
        "https://www.googleapis.com/auth/tagmanager.readonly": "Google Tag Manager - Read tag configuration",
        "https://www.googleapis.com/auth/webmasters.readonly": "Google Search Console - Read search performance data",
        "https://www.googleapis.com/auth/content": "Google Merchant Center - Manage product listings",
    },
    Platform.META.value: {
        "pages_show_list": "View list of your Facebook Pages",
        "pages_read_engagement": "Read Page content and engagement data",
        "pages_manage_posts": "Create and manage posts on your Pages",
        "ads_read": "Read ad account performance",
        "ads_management": "Manage Facebook and Instagram ad campaigns",
        "catalog_management": "Manage product catalogs for shopping ads",
        "business_management": "Access business data and datasets",
        "instagram_basic": "Access Instagram account information",
    },
    Platform.TIKTOK.value: {
        "user.info.basic": "Access basic user information",
        "video.list": "View your video content",
        "video.publish": "Publish videos on your behalf",
        "ads.read": "Read TikTok ad accounts",
    },
    Platform.SHOPIFY.value: {
        "store_access": "Access to your Shopify store via collaborator code",
        "read_orders": "Read orders",
        "read_products": "Read products",
        "read_customers": "Read customers",
    },
}


def scopes_for(platform: str) -> List[str]:
    return list(SCOPE_DESCRIPTIONS.get(platform, {}))


def describe_scope(platform: str, scope: str) -> str:
    return SCOPE_DESCRIPTIONS.get(platform, {}).get(scope, scope)


def validate_scopes(platform: str, requested: Iterable[str]) -> bool:
    known = SCOPE_DESCRIPTIONS.get(platform)
    if known is None:
        return False
    return all(s in known for s in requested)


def parse_permission_strings(items: Iterable[str]) -> Dict[str, List[str]]:
    """
    ``["meta:ads_read", "google:https://…/adwords"]`` →
    ``{"meta": ["ads_read"], "google": ["https://…/adwords"]}``.

    Only the first ``:`` separates platform from scope because Google
    scopes are URLs.  Order is preserved, duplicates dropped, entries
    without a platform prefix ignored.
    """
    result: Dict[str, List[str]] = {}
    for item in items:
        platform, sep, scope = str(item).partition(":")
        platform = platform.strip().lower()
        scope = scope.strip()
        if not sep or not platform or not scope:
            continue
        bucket = result.setdefault(platform, [])
        if scope not in bucket:
            bucket.append(scope)
    return result


def format_permission_strings(mapping: Mapping[str, Iterable[str]]) -> List[str]:
    return [f"{platform}:{scope}" for platform, scopes in mapping.items() for scope in scopes]


def normalize_permissions(value: object) -> Dict[str, List[str]]:
    """Accept either the structured mapping or a list of ``platform:scope`` strings."""
    if isinstance(value, Mapping):
        return {str(k).lower(): [str(s) for s in (v or [])] for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return parse_permission_strings(value)
    return {}
