"""Subscription tier table and derived helpers."""

from __future__ import annotations

from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, TypedDict


class TierLimits(TypedDict):
    max_photos: int
    max_photos_per_user: int
    max_videos: int
    storage_days: int
    has_video_addon: bool
    price_cents: int


TIER_ORDER = ("free", "basic", "standard", "premium", "pro")

# Prices in centavos
SUBSCRIPTION_TIERS: Mapping[str, TierLimits] = MappingProxyType(
    {
        "free": {
            "max_photos": 30,
            "max_photos_per_user": 3,
            "max_videos": 0,
            "storage_days": 3,
            "has_video_addon": False,
            "price_cents": 0,
        },
        "basic": {
            "max_photos": 50,
            "max_photos_per_user": 5,
            "max_videos": 0,
            "storage_days": 7,
            "has_video_addon": False,
            "price_cents": 69900,
        },
        "standard": {
            "max_photos": 100,
            "max_photos_per_user": 5,
            "max_videos": 20,
            "storage_days": 14,
            "has_video_addon": True,
            "price_cents": 99900,
        },
        "premium": {
            "max_photos": 250,
            "max_photos_per_user": 5,
            "max_videos": 50,
            "storage_days": 30,
            "has_video_addon": True,
            "price_cents": 199900,
        },
        "pro": {
            "max_photos": 500,
            "max_photos_per_user": 5,
            "max_videos": 100,
            "storage_days": 30,
            "has_video_addon": True,
            "price_cents": 349900,
        },
    }
)

VIDEO_ADDON_PRICES: Mapping[str, int] = MappingProxyType(
    {"basic": 0, "standard": 60000, "premium": 120000, "pro": 210000}
)


def is_known_tier(tier: Optional[str]) -> bool:
    return (tier or "") in SUBSCRIPTION_TIERS


def get_tier_limits(tier: Optional[str]) -> TierLimits:
    """Unknown tiers fall back to the free tier."""
    return SUBSCRIPTION_TIERS.get(tier or "", SUBSCRIPTION_TIERS["free"])


def tier_rank(tier: str) -> int:
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        return -1


def next_tier(tier: str) -> Optional[str]:
    idx = tier_rank(tier)
    if idx < 0 or idx >= len(TIER_ORDER) - 1:
        return None
    return TIER_ORDER[idx + 1]


def video_enabled(tier: str, has_video_addon: bool) -> bool:
    return bool(has_video_addon) and get_tier_limits(tier)["has_video_addon"]


def event_quotas(tier: str, has_video_addon: bool) -> Dict[str, int]:
    """Quota columns an Event on `tier` should carry."""
    limits = get_tier_limits(tier)
    return {
        "max_photos": limits["max_photos"],
        "max_photos_per_user": limits["max_photos_per_user"],
        "max_videos": limits["max_videos"] if video_enabled(tier, has_video_addon) else 0,
        "storage_days": limits["storage_days"],
    }


def calculate_expiration(start: datetime, tier: str) -> datetime:
    return start + timedelta(days=get_tier_limits(tier)["storage_days"])


def calculate_total_price(tier: str, has_video_addon: bool = False) -> int:
    limits = get_tier_limits(tier)
    total = limits["price_cents"]
    if has_video_addon and limits["has_video_addon"]:
        total += VIDEO_ADDON_PRICES.get(tier, 0)
    return total


def expiration_status(expires_at: datetime, now: datetime) -> Dict[str, object]:
    remaining = expires_at - now
    seconds = remaining.total_seconds()
    days_remaining = max(0, int(-(-seconds // 86400)))  # ceil
    is_expired = expires_at < now
    return {
        "days_remaining": days_remaining,
        "is_expired": is_expired,
        "is_expiring_soon": (not is_expired) and days_remaining <= 1,
    }


def upgrade_recommendations(
    tier: str, total_photos: int, total_videos: int, days_remaining: int
) -> List[Dict[str, object]]:
    recs: List[Dict[str, object]] = []
    upgrade = next_tier(tier)
    if upgrade is None:
        return recs
    current = get_tier_limits(tier)
    target = get_tier_limits(upgrade)

    if current["max_photos"]:
        pct = total_photos / current["max_photos"] * 100
        if pct >= 80:
            recs.append(
                {
                    "tier": upgrade,
                    "reason": (
                        f"You've used {round(pct)}% of your photo limit. "
                        f"Upgrade to {target['max_photos']} photos."
                    ),
                    "price_cents": target["price_cents"],
                }
            )
    if current["has_video_addon"] and current["max_videos"] > 0:
        pct = total_videos / current["max_videos"] * 100
        if pct >= 80:
            recs.append(
                {
                    "tier": upgrade,
                    "reason": (
                        f"You've used {round(pct)}% of your video limit. "
                        f"Upgrade to {target['max_videos']} videos."
                    ),
                    "price_cents": target["price_cents"],
                }
            )
    if days_remaining <= 1:
        recs.append(
            {
                "tier": upgrade,
                "reason": (
                    f"Your event expires in {days_remaining} day(s). "
                    f"Upgrade for {target['storage_days']} days storage."
                ),
                "price_cents": target["price_cents"],
            }
        )
    return recs
