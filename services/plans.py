"""Plan tiers and the quota multipliers they earn."""
from __future__ import annotations

import math
from enum import Enum
from typing import Dict, Optional


class PlanTier(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


PLAN_MULTIPLIERS: Dict[PlanTier, float] = {
    PlanTier.ANONYMOUS: 0.5,
    PlanTier.FREE: 0.8,
    PlanTier.PRO: 5.0,
    PlanTier.PREMIUM: 10.0,
    PlanTier.ENTERPRISE: 10.0,
}

# Sensitive endpoints get a narrower boost for the top tiers.
ENDPOINT_MULTIPLIERS: Dict[str, Dict[PlanTier, float]] = {
    "auth": {
        PlanTier.PREMIUM: 3.0,
        PlanTier.ENTERPRISE: 5.0,
    },
}

VALID_PLAN_TIERS = {tier.value for tier in PlanTier}


def parse_plan_tier(value: Optional[str]) -> PlanTier:
    """Return the tier named by ``value``; a missing value means anonymous."""

    normalized = (value or "").strip().lower()
    if not normalized:
        return PlanTier.ANONYMOUS
    if normalized not in VALID_PLAN_TIERS:
        raise ValueError(f"Unknown plan tier: {value}")
    return PlanTier(normalized)


def multiplier_for(tier: PlanTier, endpoint: str) -> float:
    overrides = ENDPOINT_MULTIPLIERS.get(endpoint, {})
    if tier in overrides:
        return overrides[tier]
    return PLAN_MULTIPLIERS[tier]


def scaled_limit(base: int, tier: PlanTier, endpoint: str) -> int:
    return max(1, math.floor(base * multiplier_for(tier, endpoint)))


def plan_endpoint(endpoint: str, tier: PlanTier) -> str:
    return f"{endpoint}_{tier.value}"
