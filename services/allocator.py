"""
Day x slot allocation.

The allocator walks a small state machine for every plan:

    INITIAL   split pinned (preselected) activities from candidates
    OPTIMIZE  ask the optimizer collaborator for a full schedule
    VERIFY    every pinned (day, slot, name) must appear in that schedule
    FALLBACK  deterministic fill, entered on any optimize or verify failure
    DONE

Pinned activities are placed before any candidate, and their day and slot
are never changed. A candidate is placed at most once per plan.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from errors import OptimizationFailure
from models import (
    CategoryShare,
    DayOptions,
    DaySchedule,
    PlannedActivity,
    ScheduleResult,
    SuggestedItineraries,
    TravelPreferences,
)
from request_context import get_request_id
from services.categories import SLOT_START_TIMES, TIME_SLOTS, typical_duration_hours
from services.deduplicator import DedupConfig, is_duplicate
from services.scorer import ScoredActivity
from services.text_similarity import normalize_text
from services.tiers import TIERS

log = logging.getLogger("allocator")

Cell = Tuple[int, str]


class AllocationState(str, Enum):
    INITIAL = "initial"
    OPTIMIZE = "optimize"
    VERIFY = "verify"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass(frozen=True)
class Placement:
    day_number: int
    time_slot: str
    name: str


@dataclass
class OptimizedPlan:
    placements: List[Placement]
    trip_overview: str = ""
    activity_fit_notes: List[str] = field(default_factory=list)


class ScheduleOptimizer(Protocol):
    async def optimize(
        self,
        pinned: Sequence[ScoredActivity],
        candidates: Sequence[ScoredActivity],
        days: int,
        preferences: TravelPreferences,
        destination: str = "",
    ) -> OptimizedPlan: ...


# ---------- placement helpers ----------

def plan_activity(scored: ScoredActivity, day_number: int, time_slot: str) -> PlannedActivity:
    """Materialize a scored activity on one grid cell; a missing duration takes the category's typical one."""
    base = scored.annotated()
    data = base.model_dump()
    if not data["duration"]:
        data["duration"] = typical_duration_hours(base.category)
    data.update({
        "day_number": day_number,
        "time_slot": time_slot,
        "start_time": SLOT_START_TIMES[time_slot],
        "tier": scored.tier,
    })
    return PlannedActivity.model_validate(data)


def place_all(
    scored: Sequence[ScoredActivity],
    days: int,
    schedule: Sequence[DaySchedule] = (),
) -> List[PlannedActivity]:
    """
    Every ranked activity on a grid cell (the option pool).

    Activities the schedule placed keep their scheduled cell; the rest go on
    their own day and preferred slot.
    """
    placed = {a.key: a for d in schedule for a in d.activities}
    out = []
    for s in scored:
        hit = placed.pop(s.activity.key, None)
        if hit is not None:
            out.append(hit)
            continue
        day = s.activity.day_number or 1
        out.append(plan_activity(s, min(max(day, 1), days), s.activity.time_slot or s.preferred_slot))
    return out


def _is_pinnable(s: ScoredActivity, days: int) -> bool:
    a = s.activity
    return a.day_number is not None and 1 <= a.day_number <= days and a.time_slot in TIME_SLOTS


def partition(
    activities: Sequence[ScoredActivity],
    days: int,
    dedup: Optional[DedupConfig] = None,
) -> Tuple[List[ScoredActivity], List[ScoredActivity]]:
    """
    Split into (pinned, candidates).

    A selected activity without a usable day and slot, or colliding with an
    earlier pinned activity's cell, is demoted to a candidate. Candidates that
    duplicate a pinned activity are removed.
    """
    dedup = dedup or DedupConfig.from_settings()
    pinned: List[ScoredActivity] = []
    taken: Set[Cell] = set()
    candidates: List[ScoredActivity] = []
    for s in activities:
        if not s.activity.selected:
            candidates.append(s)
            continue
        cell = (s.activity.day_number, s.activity.time_slot)
        if _is_pinnable(s, days) and cell not in taken:
            taken.add(cell)
            pinned.append(s)
        else:
            log.warning("Preselected activity cannot be pinned; treating as candidate", extra={
                "request_id": get_request_id(),
                "activity": s.name,
                "day": s.activity.day_number,
                "slot": s.activity.time_slot,
            })
            candidates.append(s)

    pinned_keys = {p.activity.key for p in pinned}
    pool = [c for c in candidates
            if c.activity.key not in pinned_keys
            and not any(is_duplicate(p.activity, c.activity, dedup) for p in pinned)]
    # stable: equal scores keep rank order
    pool.sort(key=lambda c: -c.score)
    return pinned, pool


def _fill(
    grid: Dict[Cell, PlannedActivity],
    used: Set[str],
    pool: Sequence[ScoredActivity],
    days: int,
    per_day: int,
) -> None:
    for day in range(1, days + 1):
        needed = per_day - sum(1 for (d, _s) in grid if d == day)
        for slot in TIME_SLOTS:
            if needed <= 0:
                break
            if (day, slot) in grid:
                continue
            pick = next((c for c in pool if c.activity.key not in used), None)
            if pick is None:
                return
            used.add(pick.activity.key)
            grid[(day, slot)] = plan_activity(pick, day, slot)
            needed -= 1


def _pin(pinned: Sequence[ScoredActivity]) -> Tuple[Dict[Cell, PlannedActivity], Set[str]]:
    grid: Dict[Cell, PlannedActivity] = {}
    used: Set[str] = set()
    for p in pinned:
        day, slot = p.activity.day_number, p.activity.time_slot
        grid[(day, slot)] = plan_activity(p, day, slot)
        used.add(p.activity.key)
    return grid, used


def _to_days(grid: Dict[Cell, PlannedActivity], days: int) -> List[DaySchedule]:
    return [
        DaySchedule(day_number=d, activities=[grid[(d, s)] for s in TIME_SLOTS if (d, s) in grid])
        for d in range(1, days + 1)
    ]


def _fit_note(a: PlannedActivity, pinned_keys: Set[str]) -> str:
    why = "selected by you" if a.key in pinned_keys else (a.scoring_reason or "fills an open slot")
    return f"Day {a.day_number} {a.time_slot}: {a.name} ({why})"


def _overview(schedule: Sequence[DaySchedule]) -> str:
    placed = [a for d in schedule for a in d.activities]
    if not placed:
        return f"{len(schedule)}-day plan with no activities placed."
    cats = Counter(a.category for a in placed)
    mix = ", ".join(f"{n} {c}" for c, n in sorted(cats.items(), key=lambda kv: (-kv[1], kv[0])))
    return f"{len(schedule)}-day plan with {len(placed)} activities: {mix}."


def fallback_schedule(
    pinned: Sequence[ScoredActivity],
    candidates: Sequence[ScoredActivity],
    days: int,
    per_day: int = 3,
) -> ScheduleResult:
    """
    Deterministic schedule: pinned activities in their cells, then free slots
    filled morning, afternoon, evening from candidates in score order.
    """
    grid, used = _pin(pinned)
    pool = sorted(candidates, key=lambda c: -c.score)
    _fill(grid, used, pool, days, per_day)
    schedule = _to_days(grid, days)
    pinned_keys = {p.activity.key for p in pinned}
    return ScheduleResult(
        schedule=schedule,
        trip_overview=_overview(schedule),
        activity_fit_notes=[_fit_note(a, pinned_keys) for d in schedule for a in d.activities],
    )


def verify(plan: OptimizedPlan, pinned: Sequence[ScoredActivity]) -> None:
    placed = {(p.day_number, p.time_slot, normalize_text(p.name)) for p in plan.placements}
    missing = [
        p.name for p in pinned
        if (p.activity.day_number, p.activity.time_slot, normalize_text(p.name)) not in placed
    ]
    if missing:
        raise OptimizationFailure(f"optimizer dropped or moved preselected activities: {', '.join(missing)}")


def assemble(
    plan: OptimizedPlan,
    pinned: Sequence[ScoredActivity],
    candidates: Sequence[ScoredActivity],
    days: int,
    per_day: int = 3,
) -> ScheduleResult:
    grid, used = _pin(pinned)
    by_name: Dict[str, ScoredActivity] = {}
    for c in candidates:
        by_name.setdefault(normalize_text(c.name), c)

    for pl in plan.placements:
        cell = (pl.day_number, pl.time_slot)
        if not 1 <= pl.day_number <= days or pl.time_slot not in TIME_SLOTS or cell in grid:
            continue
        c = by_name.get(normalize_text(pl.name))
        if c is None or c.activity.key in used:
            continue
        if sum(1 for (d, _s) in grid if d == pl.day_number) >= per_day:
            continue
        used.add(c.activity.key)
        grid[cell] = plan_activity(c, *cell)

    # optimizers sometimes leave holes; top up like the fallback would
    _fill(grid, used, sorted(candidates, key=lambda c: -c.score), days, per_day)
    schedule = _to_days(grid, days)
    pinned_keys = {p.activity.key for p in pinned}
    return ScheduleResult(
        schedule=schedule,
        trip_overview=plan.trip_overview or _overview(schedule),
        activity_fit_notes=plan.activity_fit_notes or [_fit_note(a, pinned_keys) for d in schedule for a in d.activities],
    )


# ---------- allocator ----------

class DaySlotAllocator:
    def __init__(
        self,
        optimizer: Optional[ScheduleOptimizer] = None,
        per_day: int = 3,
        optimizer_timeout_s: float = 45.0,
        dedup: Optional[DedupConfig] = None,
    ):
        self.optimizer = optimizer
        self.per_day = max(1, min(per_day, len(TIME_SLOTS)))
        self.optimizer_timeout_s = optimizer_timeout_s
        self.dedup = dedup

    async def allocate(
        self,
        activities: Sequence[ScoredActivity],
        days: int,
        preferences: Optional[TravelPreferences] = None,
        destination: str = "",
        trace: Optional[List[AllocationState]] = None,
    ) -> ScheduleResult:
        """
        Always returns a complete schedule; optimizer failures end in FALLBACK.

        Pass `trace` to collect the states this call walked through.
        """
        rid = get_request_id()
        preferences = preferences or TravelPreferences()
        path = trace if trace is not None else []

        def enter(state: AllocationState) -> AllocationState:
            log.debug("Allocator state", extra={
                "request_id": rid,
                "from": (path[-1] if path else AllocationState.INITIAL).value,
                "to": state.value,
            })
            path.append(state)
            return state

        enter(AllocationState.INITIAL)
        pinned, candidates = partition(activities, days, self.dedup)

        state = enter(AllocationState.OPTIMIZE if self.optimizer else AllocationState.FALLBACK)
        result: Optional[ScheduleResult] = None
        if state is AllocationState.OPTIMIZE:
            try:
                plan = await asyncio.wait_for(
                    self.optimizer.optimize(pinned, candidates, days, preferences, destination),
                    timeout=self.optimizer_timeout_s,
                )
                enter(AllocationState.VERIFY)
                verify(plan, pinned)
                result = assemble(plan, pinned, candidates, days, self.per_day)
            except asyncio.TimeoutError:
                log.warning("Optimizer timed out; using fallback", extra={"request_id": rid, "timeout_s": self.optimizer_timeout_s})
            except Exception as e:
                log.warning("Optimizer result rejected; using fallback", extra={"request_id": rid, "error": str(e)})

        if result is None:
            if path[-1] is not AllocationState.FALLBACK:
                enter(AllocationState.FALLBACK)
            result = fallback_schedule(pinned, candidates, days, self.per_day)

        enter(AllocationState.DONE)
        log.info("Allocation complete", extra={
            "request_id": rid,
            "days": days,
            "pinned": len(pinned),
            "candidates": len(candidates),
            "placed": sum(len(d.activities) for d in result.schedule),
        })
        return result


# ---------- suggested itineraries ----------

def _best_first(options: Iterable[PlannedActivity]) -> List[PlannedActivity]:
    return sorted(options, key=lambda a: (-(a.preference_score or 0), -a.rating, -a.number_of_reviews))


def build_suggested_itineraries(activities: Sequence[PlannedActivity], days: int) -> SuggestedItineraries:
    """Per tier, per day and slot: the best option plus all options, falling back to lower tiers."""
    cells: Dict[Tuple[int, str, str], List[PlannedActivity]] = defaultdict(list)
    for a in activities:
        cells[(a.day_number, a.time_slot, a.tier)].append(a)

    out: Dict[str, List[DayOptions]] = {}
    for index, tier in enumerate(TIERS):
        per_day = []
        for day in range(1, days + 1):
            fields: Dict[str, object] = {"day_number": day}
            for slot in TIME_SLOTS:
                options: List[PlannedActivity] = []
                for t in TIERS[index::-1]:
                    options = cells.get((day, slot, t), [])
                    if options:
                        break
                ranked = _best_first(options)
                fields[slot] = ranked[0] if ranked else None
                fields[f"{slot}_options"] = ranked
            per_day.append(DayOptions(**fields))
        out[tier] = per_day
    return SuggestedItineraries(**out)


def category_distribution(activities: Sequence[PlannedActivity]) -> Dict[str, CategoryShare]:
    total = len(activities)
    if not total:
        return {}
    counts: Dict[str, int] = Counter(a.category for a in activities)
    by_tier: Dict[str, Counter] = defaultdict(Counter)
    for a in activities:
        by_tier[a.category][a.tier] += 1
    return {
        cat: CategoryShare(count=n, percentage=round(100.0 * n / total, 1), by_tier=dict(by_tier[cat]))
        for cat, n in sorted(counts.items())
    }
