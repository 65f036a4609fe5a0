"""
Price tiers.

Activities use one general table everywhere a tier is derived (scoring,
allocation, the `tier` on every returned activity) and a narrower strict band
that the validator enforces against the tier an activity declares:

    general   budget <= 30 < medium <= 100 < premium
    strict    budget [15, 30]   medium (30, 100]   premium (100, 300]

Flights and hotels are tiered by cabin class first and price second.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Optional, Tuple

TIERS: Tuple[str, ...] = ("budget", "medium", "premium")

ACTIVITY_BUDGET_MAX = 30.0
ACTIVITY_MEDIUM_MAX = 100.0

# tier -> (low, high, low_inclusive)
STRICT_BANDS: Dict[str, Tuple[float, float, bool]] = {
    "budget": (15.0, 30.0, True),
    "medium": (30.0, 100.0, False),
    "premium": (100.0, 300.0, False),
}

TRAVEL_BUDGET_MAX = 500.0
TRAVEL_MEDIUM_MAX = 1000.0
BUSINESS_PREMIUM_ABOVE = 1500.0

TIER_ALIASES: Dict[str, str] = {
    "moderate": "medium",
    "mid": "medium",
    "mid-range": "medium",
    "midrange": "medium",
    "standard": "medium",
    "comfortable": "medium",
    "luxury": "premium",
    "high-end": "premium",
    "upscale": "premium",
    "shoestring": "budget",
    "cheap": "budget",
    "economy": "budget",
}


def coerce_tier(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    if v in TIERS:
        return v
    return TIER_ALIASES.get(v)


def _clean(price: Any) -> float:
    try:
        p = float(price or 0)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(p) or p < 0:
        return 0.0
    return p


def classify(price: float) -> str:
    p = _clean(price)
    if p <= ACTIVITY_BUDGET_MAX:
        return "budget"
    if p <= ACTIVITY_MEDIUM_MAX:
        return "medium"
    return "premium"


def within_strict_band(price: float, tier: str) -> bool:
    band = STRICT_BANDS.get(tier)
    if band is None:
        return False
    low, high, low_inclusive = band
    p = _clean(price)
    above = p >= low if low_inclusive else p > low
    return above and p <= high


def strict_band_tier(price: float) -> Optional[str]:
    for tier in TIERS:
        if within_strict_band(price, tier):
            return tier
    return None


def classify_travel_offer(price: float, cabin_class: Optional[str] = None) -> str:
    cabin = (cabin_class or "").strip().upper().replace(" ", "_")
    p = _clean(price)
    if cabin == "FIRST":
        return "premium"
    if cabin == "BUSINESS":
        return "premium" if p > BUSINESS_PREMIUM_ABOVE else "medium"
    if cabin == "PREMIUM_ECONOMY":
        return "medium"
    if p <= TRAVEL_BUDGET_MAX:
        return "budget"
    if p <= TRAVEL_MEDIUM_MAX:
        return "medium"
    return "premium"
