# app/services/tiers.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.models.tenant import Organization


class SubscriptionTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    AGENCY = "agency"


class TierLimitError(Exception):
    def __init__(self, message: str, *, tier: SubscriptionTier, limit: int) -> None:
        super().__init__(message)
        self.tier = tier
        self.limit = limit


@dataclass(frozen=True)
class TierLimits:
    max_locations: int
    max_competitors_per_location: int
    retention_days: int
    events_cadence: str  # weekly | daily
    events_queries_per_run: int
    events_max_depth: int
    tracked_keywords: int
    photos_per_competitor: int


TIER_LIMITS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(
        max_locations=1,
        max_competitors_per_location=5,
        retention_days=30,
        events_cadence="weekly",
        events_queries_per_run=1,
        events_max_depth=10,
        tracked_keywords=10,
        photos_per_competitor=3,
    ),
    SubscriptionTier.STARTER: TierLimits(
        max_locations=3,
        max_competitors_per_location=15,
        retention_days=90,
        events_cadence="weekly",
        events_queries_per_run=2,
        events_max_depth=20,
        tracked_keywords=25,
        photos_per_competitor=5,
    ),
    SubscriptionTier.PRO: TierLimits(
        max_locations=10,
        max_competitors_per_location=50,
        retention_days=180,
        events_cadence="daily",
        events_queries_per_run=2,
        events_max_depth=40,
        tracked_keywords=50,
        photos_per_competitor=10,
    ),
    SubscriptionTier.AGENCY: TierLimits(
        max_locations=50,
        max_competitors_per_location=200,
        retention_days=365,
        events_cadence="daily",
        events_queries_per_run=3,
        events_max_depth=60,
        tracked_keywords=100,
        photos_per_competitor=10,
    ),
}


def tier_for(value: Optional[str]) -> SubscriptionTier:
    try:
        return SubscriptionTier(str(value or "").lower())
    except ValueError:
        return SubscriptionTier.FREE


def get_limits(tier: SubscriptionTier | str) -> TierLimits:
    return TIER_LIMITS[tier_for(tier) if not isinstance(tier, SubscriptionTier) else tier]


def load_tenant_tier(db: Session, organization_id: str) -> SubscriptionTier:
    org = db.get(Organization, organization_id)
    return tier_for(org.subscription_tier if org else None)


def ensure_location_limit(tier: SubscriptionTier | str, current_count: int) -> None:
    limits = get_limits(tier)
    if current_count >= limits.max_locations:
        raise TierLimitError(
            f"Your plan allows {limits.max_locations} location(s)",
            tier=tier_for(tier),
            limit=limits.max_locations,
        )


def ensure_competitor_limit(tier: SubscriptionTier | str, current_count: int) -> None:
    limits = get_limits(tier)
    if current_count >= limits.max_competitors_per_location:
        raise TierLimitError(
            f"Your plan allows {limits.max_competitors_per_location} competitors per location",
            tier=tier_for(tier),
            limit=limits.max_competitors_per_location,
        )
