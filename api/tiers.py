"""Subscription tier ordering and playback URL lifetimes."""

from typing import Dict, Optional, Union

from api.enums import SubscriptionTier

TierLike = Union[SubscriptionTier, str, None]

# Access levels; higher tiers include everything below them
TIER_LEVELS: Dict[SubscriptionTier, int] = {
    SubscriptionTier.NONE: 0,
    SubscriptionTier.BEGINNER: 1,
    SubscriptionTier.INTERMEDIATE: 2,
    SubscriptionTier.ADVANCED: 3,
}

# Signed playback URL lifetime per tier (seconds)
PLAYBACK_TTL_SECONDS: Dict[SubscriptionTier, int] = {
    SubscriptionTier.NONE: 30 * 60,
    SubscriptionTier.BEGINNER: 2 * 60 * 60,
    SubscriptionTier.INTERMEDIATE: 8 * 60 * 60,
    SubscriptionTier.ADVANCED: 24 * 60 * 60,
}

# Admin previews are not tied to a subscription
ADMIN_PREVIEW_TTL_SECONDS = 60 * 60


def parse_tier(tier: TierLike) -> SubscriptionTier:
    """Coerce a tier name to SubscriptionTier; None and "" mean no subscription.

    Raises:
        ValueError: If the name is not a known tier
    """
    if tier is None or tier == "":
        return SubscriptionTier.NONE
    if isinstance(tier, SubscriptionTier):
        return tier
    return SubscriptionTier(str(tier).strip().lower())


def tier_allows(user_tier: TierLike, required_tier: TierLike) -> bool:
    """Check whether a subscriber's tier grants access to content at required_tier."""
    user = parse_tier(user_tier)
    if user == SubscriptionTier.NONE:
        return False
    return TIER_LEVELS[user] >= TIER_LEVELS[parse_tier(required_tier)]


def playback_ttl(tier: TierLike, override_seconds: Optional[int] = None) -> int:
    """Lifetime in seconds for a playback URL issued to ``tier``."""
    if override_seconds is not None:
        return override_seconds
    return PLAYBACK_TTL_SECONDS[parse_tier(tier)]
