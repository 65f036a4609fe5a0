"""
Near-duplicate clustering of validated activities.

Marketplaces list the same experience many times ("Seine River Cruise
Tickets", "Seine River Dinner Cruise"). Activities are grouped by title
similarity, gated on duration and location compatibility, and each group is
reduced to its best-reviewed member.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from config import settings
from models import Activity
from request_context import get_request_id
from services.text_similarity import combined_similarity, normalize_text, normalize_title, word_set_jaccard

log = logging.getLogger("pipeline")

MAX_DURATION_HOURS = 24.0
MIN_DURATION_HOURS = 0.25


@dataclass(frozen=True)
class DedupConfig:
    similarity_threshold: float = 0.6
    duration_tolerance_minutes: float = 30.0
    location_threshold: float = 0.5

    @classmethod
    def from_settings(cls) -> "DedupConfig":
        return cls(
            similarity_threshold=settings.DEDUP_SIMILARITY_THRESHOLD,
            duration_tolerance_minutes=settings.DEDUP_DURATION_TOLERANCE_MINUTES,
            location_threshold=settings.DEDUP_LOCATION_THRESHOLD,
        )


def durations_compatible(a: Activity, b: Activity, tolerance_minutes: float) -> bool:
    if not a.duration or not b.duration:
        return True
    return abs(a.duration - b.duration) * 60 <= tolerance_minutes


def locations_compatible(a: Activity, b: Activity, threshold: float) -> bool:
    la, lb = normalize_text(a.location), normalize_text(b.location)
    if not la or not lb or la == lb:
        return True
    if la in lb or lb in la:
        return True
    return word_set_jaccard(la, lb) >= threshold


def is_duplicate(a: Activity, b: Activity, config: DedupConfig) -> bool:
    ta, tb = normalize_title(a.name), normalize_title(b.name)
    if ta and ta == tb:
        return True
    if combined_similarity(a.name, b.name) <= config.similarity_threshold:
        return False
    return (durations_compatible(a, b, config.duration_tolerance_minutes)
            and locations_compatible(a, b, config.location_threshold))


def _preference_key(a: Activity):
    # rated beats unrated, then rating, then review count, then cheaper
    return (a.rating > 0, a.rating, a.number_of_reviews, -a.price_amount)


def pick_representative(group: Sequence[Activity]) -> Activity:
    # max() keeps the earliest of equal keys, which keeps the result order-stable
    return max(group, key=_preference_key)


def _group_once(activities: Sequence[Activity], config: DedupConfig) -> List[Activity]:
    groups: List[List[Activity]] = []
    for activity in activities:
        for group in groups:
            if is_duplicate(group[0], activity, config):
                group.append(activity)
                break
        else:
            groups.append([activity])
    return [pick_representative(g) for g in groups]


def duration_is_sane(a: Activity) -> bool:
    if not a.duration:
        return True
    return MIN_DURATION_HOURS <= a.duration <= MAX_DURATION_HOURS


def dedupe(activities: Sequence[Activity], config: DedupConfig | None = None) -> List[Activity]:
    """
    Collapse near-duplicates, then drop implausible durations.

    Grouping repeats over the survivors until nothing merges, so running
    dedupe on its own output returns it unchanged.
    """
    config = config or DedupConfig.from_settings()
    current = list(activities)
    while True:
        survivors = _group_once(current, config)
        if len(survivors) == len(current):
            break
        current = survivors

    kept = [a for a in current if duration_is_sane(a)]

    merged = len(activities) - len(current)
    dropped = len(current) - len(kept)
    if merged or dropped:
        log.info("Deduplicated activities", extra={
            "request_id": get_request_id(),
            "input": len(activities),
            "merged": merged,
            "duration_dropped": dropped,
            "output": len(kept),
        })
    return kept
