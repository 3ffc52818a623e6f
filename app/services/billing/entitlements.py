"""Plan tiers and the feature limits they unlock."""
from datetime import UTC, datetime

from app.models.billing import Subscription, SubscriptionStatus
from app.services.billing.status import is_entitled
from app.services.common import as_utc

FREE = "free"
PREMIUM = "premium"
PREMIUM_PLUS = "premium_plus"

# None means unlimited.
TIER_LIMITS: dict[str, dict[str, int | None]] = {
    FREE: {
        "max_api_calls": 1000,
        "max_ai_tokens": 10000,
        "max_storage_gb": 1,
        "max_bandwidth_gb": 5,
        "max_team_members": 1,
    },
    PREMIUM: {
        "max_api_calls": 10000,
        "max_ai_tokens": 100000,
        "max_storage_gb": 10,
        "max_bandwidth_gb": 50,
        "max_team_members": 5,
    },
    PREMIUM_PLUS: {
        "max_api_calls": None,
        "max_ai_tokens": None,
        "max_storage_gb": 100,
        "max_bandwidth_gb": None,
        "max_team_members": None,
    },
}

TIER_FEATURES: dict[str, dict[str, bool]] = {
    FREE: {
        "advanced_analytics": False,
        "priority_support": False,
        "custom_integrations": False,
        "api_access": False,
        "white_label": False,
    },
    PREMIUM: {
        "advanced_analytics": True,
        "priority_support": True,
        "custom_integrations": False,
        "api_access": True,
        "white_label": False,
    },
    PREMIUM_PLUS: {
        "advanced_analytics": True,
        "priority_support": True,
        "custom_integrations": True,
        "api_access": True,
        "white_label": True,
    },
}

# Usage event types -> the limit they count against.
USAGE_LIMIT_KEYS = {
    "api_call": "max_api_calls",
    "api_calls": "max_api_calls",
    "ai_tokens": "max_ai_tokens",
    "storage_gb": "max_storage_gb",
    "bandwidth_gb": "max_bandwidth_gb",
}


def determine_tier(product_slug: str | None) -> str:
    slug = (product_slug or "").lower()
    if "premium-plus" in slug or "premium_plus" in slug:
        return PREMIUM_PLUS
    if "premium" in slug or "pro" in slug:
        return PREMIUM
    return FREE


def tier_for(subscription: Subscription | None) -> str:
    if subscription is None or not is_entitled(subscription.status):
        return FREE
    slug = (subscription.metadata_ or {}).get("product_slug")
    return determine_tier(slug or subscription.product_external_id)


def limit_for(tier: str, event_type: str) -> tuple[bool, int | None]:
    """(is_limited, limit). Unknown event types are not limited."""
    key = USAGE_LIMIT_KEYS.get(event_type)
    if key is None:
        return False, None
    limit = TIER_LIMITS[tier][key]
    return limit is not None, limit


def plan_summary(subscription: Subscription | None, now: datetime | None = None) -> dict:
    now = now or datetime.now(UTC)
    tier = tier_for(subscription)
    is_trialing = (
        subscription is not None and subscription.status == SubscriptionStatus.trialing
    )
    days_left = None
    trial_end = as_utc(subscription.trial_end) if subscription is not None else None
    if is_trialing and trial_end is not None:
        days_left = max(0, (trial_end - now).days)
    return {
        "tier": tier,
        "status": subscription.status.value if subscription is not None else None,
        "subscription_id": subscription.id if subscription is not None else None,
        "current_period_end": subscription.current_period_end if subscription else None,
        "cancel_at_period_end": bool(subscription and subscription.cancel_at_period_end),
        "is_trialing": is_trialing,
        "days_left_in_trial": days_left,
        "limits": dict(TIER_LIMITS[tier]),
        "features": dict(TIER_FEATURES[tier]),
    }
