from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from errors import OptimizationFailure
from models import TravelPreferences
from request_context import get_request_id
from services.allocator import OptimizedPlan, Placement
from services.llm_client import JSON_SYSTEM_PROMPT, LLMClient
from services.normalizer import as_int
from services.sanitizer import loads_lenient
from services.scorer import ScoredActivity

log = logging.getLogger("allocator")

MAX_PROMPT_CANDIDATES = 30


def _describe(s: ScoredActivity) -> str:
    a = s.activity
    price = f"{a.price.currency} {a.price_amount:g}" if a.price else "free"
    return f"- {a.name} (score {s.score}, {a.duration:g}h, {a.category}, {price}, {s.tier}, prefers {s.preferred_slot})"


def schedule_prompt(
    pinned: Sequence[ScoredActivity],
    candidates: Sequence[ScoredActivity],
    days: int,
    preferences: TravelPreferences,
    destination: str = "",
    per_day: int = 3,
) -> str:
    where = f" in {destination}" if destination else ""
    blocks = [f"Optimize this {days}-day activity schedule{where}."]
    if preferences.interests:
        blocks.append(f"Traveler interests: {', '.join(preferences.interests)}.")
    if preferences.travel_style:
        blocks.append(f"Travel style: {preferences.travel_style}.")
    if pinned:
        blocks.append("\nPreselected activities (keep each on exactly this day and slot):")
        blocks.extend(f"- Day {p.activity.day_number} {p.activity.time_slot}: {p.name}" for p in pinned)
    blocks.append("\nAvailable activities (pre-scored, best first):")
    blocks.extend(_describe(c) for c in candidates[:MAX_PROMPT_CANDIDATES])
    blocks += [
        "\nRules:",
        "- Time slots: morning 09:00-13:00, afternoon 14:00-18:00, evening 19:00-23:00.",
        f"- At most one activity per slot and {per_day} per day; never repeat an activity.",
        "- Mix categories within a day and keep neighbouring activities close together.",
        "- Use activity names exactly as listed.",
        "\nReturn JSON only:",
        '{"schedule": [{"dayNumber": 1, "activities": [{"name": "...", "timeSlot": "morning"}]}], '
        '"tripOverview": "...", "activityFitNotes": ["..."]}',
    ]
    return "\n".join(blocks)


def _placement(item: Any, day: Optional[int]) -> Optional[Placement]:
    if not isinstance(item, dict):
        return None
    name = item.get("name") or item.get("title")
    slot = str(item.get("timeSlot") or item.get("time_slot") or item.get("slot") or "").strip().lower()
    day = as_int(item.get("dayNumber", item.get("day_number", item.get("day")))) or day
    if not name or not slot or day is None:
        return None
    return Placement(day_number=day, time_slot=slot, name=str(name).strip())


def parse_schedule(payload: Any) -> OptimizedPlan:
    """Accept {schedule: [{dayNumber, activities}]} or a flat activities list."""
    if isinstance(payload, list):
        payload = {"activities": payload}
    if not isinstance(payload, dict):
        raise OptimizationFailure("optimizer returned no JSON object")

    placements: List[Placement] = []
    days = payload.get("schedule") or payload.get("days")
    if isinstance(days, list):
        for d in days:
            if not isinstance(d, dict):
                continue
            day = as_int(d.get("dayNumber", d.get("day_number", d.get("day"))))
            for item in d.get("activities") or []:
                p = _placement(item, day)
                if p:
                    placements.append(p)
    for item in payload.get("activities") or []:
        p = _placement(item, None)
        if p:
            placements.append(p)

    if not placements:
        raise OptimizationFailure("optimizer returned no placements")
    notes = payload.get("activityFitNotes") or payload.get("activity_fit_notes") or []
    return OptimizedPlan(
        placements=placements,
        trip_overview=str(payload.get("tripOverview") or payload.get("trip_overview") or ""),
        activity_fit_notes=[str(n) for n in notes] if isinstance(notes, list) else [str(notes)],
    )


class LLMScheduleOptimizer:
    def __init__(self, llm: LLMClient, model: Optional[str] = None, per_day: int = 3):
        self.llm = llm
        self.model = model
        self.per_day = per_day

    async def optimize(
        self,
        pinned: Sequence[ScoredActivity],
        candidates: Sequence[ScoredActivity],
        days: int,
        preferences: TravelPreferences,
        destination: str = "",
    ) -> OptimizedPlan:
        prompt = schedule_prompt(pinned, candidates, days, preferences, destination, self.per_day)
        content = await self.llm.complete(JSON_SYSTEM_PROMPT, prompt, model=self.model)
        plan = parse_schedule(loads_lenient(content))
        log.info("Optimizer proposed schedule", extra={"request_id": get_request_id(), "placements": len(plan.placements)})
        return plan
