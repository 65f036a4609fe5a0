from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from models import Activity, TravelPreferences
from services.categories import preferred_slot
from services.tiers import classify

WELL_REVIEWED_MIN = 50
EXCELLENT_RATING = 4.5
GOOD_RATING = 4.0


@dataclass(frozen=True)
class ScoreResult:
    score: int
    matched: Tuple[str, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class ScoredActivity:
    """A deduplicated activity with its score, tier and slot hint attached."""
    activity: Activity
    score: int
    matched: Tuple[str, ...] = ()
    reason: str = ""
    tier: str = "budget"
    preferred_slot: str = "afternoon"

    @property
    def name(self) -> str:
        return self.activity.name

    def annotated(self) -> Activity:
        return self.activity.model_copy(update={
            "tier": self.tier,
            "preference_score": float(self.score),
            "matched_preferences": list(self.matched),
            "scoring_reason": self.reason or None,
        })


def _contains(haystack: str, needle: str) -> bool:
    n = needle.strip().lower()
    return bool(n) and n in haystack


def score(activity: Activity, preferences: TravelPreferences) -> ScoreResult:
    """Additive relevance score; no match at all is a valid 0 with an empty reason."""
    total = 0
    matched: List[str] = []
    parts: List[str] = []
    description = (activity.description or "").lower()
    category = (activity.category or "").lower()

    if activity.number_of_reviews > WELL_REVIEWED_MIN:
        total += 1
        parts.append(f"well-reviewed ({activity.number_of_reviews} reviews)")

    if activity.rating >= EXCELLENT_RATING:
        total += 2
        parts.append(f"excellent rating ({activity.rating:g})")
    elif activity.rating >= GOOD_RATING:
        total += 1
        parts.append(f"good rating ({activity.rating:g})")

    for interest in preferences.interests:
        if _contains(description, interest) or _contains(category, interest):
            total += 1
            matched.append(interest)
            parts.append(f"matches interest '{interest}'")

    tier = classify(activity.price_amount)
    if preferences.travel_style and tier == preferences.travel_style:
        total += 1
        parts.append(f"fits {tier} travel style")

    for need in preferences.accessibility_needs:
        if _contains(description, need):
            total += 1
            matched.append(need)
            parts.append(f"accessible: {need}")

    for restriction in preferences.dietary_restrictions:
        if _contains(description, restriction):
            total += 1
            matched.append(restriction)
            parts.append(f"dietary: {restriction}")

    return ScoreResult(score=total, matched=tuple(matched), reason="; ".join(parts))


def rank(activities: Sequence[Activity], preferences: TravelPreferences) -> List[ScoredActivity]:
    """Score, tier and order activities best-first; ties keep input order."""
    scored = []
    for a in activities:
        result = score(a, preferences)
        scored.append(ScoredActivity(
            activity=a,
            score=result.score,
            matched=result.matched,
            reason=result.reason,
            tier=classify(a.price_amount),
            preferred_slot=a.time_slot or preferred_slot(a.name, a.description, a.category),
        ))
    return sorted(scored, key=lambda s: (-s.score, -s.activity.rating, -s.activity.number_of_reviews))
