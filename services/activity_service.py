# services/activity_service.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from errors import ActivityGenerationError, NoValidActivitiesError, ParseError, Rejection
from models import (
    ActivityPlan,
    DailySummary,
    DaySchedule,
    PlannedActivity,
    PlanRequest,
    SingleActivityRequest,
)
from request_context import get_request_id
from services.allocator import (
    DaySlotAllocator,
    build_suggested_itineraries,
    category_distribution,
    place_all,
    plan_activity,
)
from services.categories import TIME_SLOTS, load_catalog
from services.deduplicator import DedupConfig, dedupe
from services.llm_client import JSON_SYSTEM_PROMPT, LLMClient
from services.marketplace import MarketplaceClient
from services.normalizer import assign_day_numbers, normalize_raw_activity
from services.sanitizer import loads_lenient, sanitize, unwrap_root
from services.scorer import rank
from services.text_similarity import normalize_text
from services.tiers import STRICT_BANDS
from services.validator import MIN_HIGHLIGHTS, validate_batch, validate_single

log = logging.getLogger("llm")

SUMMARY_SYSTEM_PROMPT = "You are a travel itinerary expert. Create natural, flowing summaries that connect activities logically."

ACTIVITY_SHAPE = {
    "name": "exact listing name",
    "description": "2-3 sentences",
    "duration": "hours (number)",
    "price": "price per person (number)",
    "tier": "budget|medium|premium",
    "category": "|".join(load_catalog().names),
    "location": "venue or area name",
    "address": "street address",
    "keyHighlights": ["at least %d highlights" % MIN_HIGHLIGHTS],
    "operatingHours": {"weekday": "09:00-18:00", "weekend": "10:00-17:00"},
    "contact": {"phone": "+33 ...", "email": "info@...", "website": "https://..."},
    "booking": {"url": "https://... booking link", "method": "online|phone|walk-in", "cancellationPolicy": "string"},
    "images": {"main": "https://... image", "gallery": ["https://..."]},
    "rating": "0-5 (number)",
    "numberOfReviews": "number",
    "timeSlot": "morning|afternoon|evening",
    "dayNumber": "number",
    "referenceUrl": "listing URL",
    "selected": False,
    "commentary": "why this activity is recommended",
    "itineraryHighlight": "how it fits the day's flow",
}


def _band(tier: str) -> str:
    lo, hi, _ = STRICT_BANDS[tier]
    return f"{tier} {lo:g}-{hi:g}"


def activity_prompt(req: PlanRequest) -> str:
    prefs = req.preferences
    wanted = req.days * len(TIME_SLOTS)
    blocks = [
        f"Plan activities for a {req.days}-day trip to {req.destination}.",
        f"travelers: {req.travelers}",
        f"currency: {req.currency}",
    ]
    if req.start_date:
        blocks.append(f"start_date: {req.start_date.isoformat()}")
    if req.budget:
        blocks.append(f"total activity budget: {req.currency} {req.budget:g}")
    blocks.append(f"interests: {', '.join(prefs.interests) if prefs.interests else 'none'}")
    if prefs.travel_style:
        blocks.append(f"travel_style: {prefs.travel_style}")
    if prefs.accessibility_needs:
        blocks.append(f"accessibility_needs: {', '.join(prefs.accessibility_needs)}")
    if prefs.dietary_restrictions:
        blocks.append(f"dietary_restrictions: {', '.join(prefs.dietary_restrictions)}")
    if req.preselected_activities:
        blocks.append("Already booked (do not repeat):")
        blocks.extend(
            f"- Day {a.day_number or '?'} {a.time_slot or ''}: {a.name}".rstrip()
            for a in req.preselected_activities
        )
    blocks += [
        "Rules:",
        f"- Return at least {wanted} activities, about 25% from each category.",
        "- Time slots: morning 09:00-13:00, afternoon 14:00-18:00, evening 19:00-23:00.",
        f"- Price tiers per person: {_band('budget')}, {_band('medium')}, {_band('premium')}; set tier to match the price.",
        "- Every activity needs a booking URL and method, weekday and weekend hours, a phone or email, "
        f"a main image plus a gallery, and at least {MIN_HIGHLIGHTS} key highlights.",
        "- Activities on the same day should be geographically close and must not overlap.",
        "Return JSON only, shaped as:",
        json.dumps({"activities": [ACTIVITY_SHAPE]}, ensure_ascii=False),
    ]
    return "\n".join(blocks)


def single_activity_prompt(req: SingleActivityRequest) -> str:
    prefs = req.preferences
    lo, hi, _ = STRICT_BANDS[req.tier]
    blocks = [
        f"Recommend ONE {req.tier} activity in {req.destination} for the {req.time_slot} of day {req.day_number}.",
        f"price per person between {lo:g} and {hi:g} {req.currency}",
    ]
    if req.category:
        blocks.append(f"category: {req.category}")
    if req.budget:
        blocks.append(f"remaining budget: {req.currency} {req.budget:g}")
    if prefs.interests:
        blocks.append(f"interests: {', '.join(prefs.interests)}")
    if req.exclude:
        blocks.append(f"exclude these activities: {', '.join(req.exclude)}")
    blocks += [
        "duration and rating are required numbers.",
        "Return JSON only, shaped as:",
        json.dumps({"activity": ACTIVITY_SHAPE}, ensure_ascii=False),
    ]
    return "\n".join(blocks)


def day_summary_prompt(day: DaySchedule, destination: str) -> str:
    lines = "\n".join(f"- {a.name} ({a.time_slot}): {a.description}" for a in day.activities)
    return (
        f"Generate a natural, flowing summary of this day's itinerary in {destination}:\n\n"
        f"Day {day.day_number} Activities:\n{lines}\n\n"
        "Requirements:\n"
        "1. Write one paragraph that connects the activities from morning to evening.\n"
        "2. Mention key highlights and practical transitions.\n"
        "3. Keep it to 4-5 sentences.\n\n"
        "Return ONLY the summary paragraph."
    )


def fallback_summary(day: DaySchedule) -> str:
    names = ", ".join(a.name for a in day.activities)
    return f"Day {day.day_number} includes {len(day.activities)} activities: {names}."


class ActivityService:
    """Whole-plan and single-activity generation over the activity pipeline."""

    def __init__(
        self,
        llm: LLMClient,
        allocator: Optional[DaySlotAllocator] = None,
        marketplace: Optional[MarketplaceClient] = None,
        dedup: Optional[DedupConfig] = None,
        planning_model: Optional[str] = None,
        summary_model: Optional[str] = None,
        enrichment_concurrency: int = 4,
    ):
        self.llm = llm
        self.allocator = allocator or DaySlotAllocator()
        self.marketplace = marketplace
        self.dedup = dedup
        self.planning_model = planning_model
        self.summary_model = summary_model
        self.enrichment_concurrency = max(1, enrichment_concurrency)

    # ---------- enrichment ----------

    async def _enrich_all(self, raws: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        sem = asyncio.Semaphore(self.enrichment_concurrency)

        async def one(raw: Dict[str, Any]) -> Dict[str, Any]:
            async with sem:
                return await self.marketplace.enrich(raw)

        results = await asyncio.gather(*(one(r) for r in raws), return_exceptions=True)
        out = []
        for raw, result in zip(raws, results):
            if isinstance(result, Exception):
                log.warning("Enrichment crashed; keeping raw activity", extra={
                    "request_id": get_request_id(), "activity": raw.get("name"), "error": repr(result),
                })
                out.append(raw)
            else:
                out.append(result)
        return out

    # ---------- whole plan ----------

    async def generate_plan(self, req: PlanRequest) -> ActivityPlan:
        rid = get_request_id()
        days = req.days
        content = await self.llm.complete(JSON_SYSTEM_PROMPT, activity_prompt(req), model=self.planning_model)
        parsed = sanitize(content)

        raws = [normalize_raw_activity(r, req.currency) for r in parsed.activities]
        raws = assign_day_numbers(raws, days)
        if self.marketplace is not None:
            raws = await self._enrich_all(raws)

        accepted, rejected = validate_batch(raws, days=days)
        if not accepted:
            raise NoValidActivitiesError(
                "All generated activities failed validation",
                rejected=[r.describe() for r in rejected[:10]],
            )

        unique = [a.model_copy(update={"selected": False}) if a.selected else a for a in dedupe(accepted, self.dedup)]
        pinned = [a.model_copy(update={"selected": True}) for a in req.preselected_activities]
        scored = rank(pinned + unique, req.preferences)

        result = await self.allocator.allocate(scored, days, req.preferences, destination=req.destination)
        planned = place_all(scored, days, result.schedule)
        summaries = await self.daily_summaries(result.schedule, req.destination)

        log.info("Activity plan generated", extra={
            "request_id": rid,
            "destination": req.destination,
            "days": days,
            "parsed": len(parsed.activities),
            "accepted": len(accepted),
            "unique": len(unique),
            "scheduled": sum(len(d.activities) for d in result.schedule),
        })
        return ActivityPlan(
            destination=req.destination,
            days=days,
            currency=req.currency,
            activities=planned,
            suggested_itineraries=build_suggested_itineraries(planned, days),
            schedule=result.schedule,
            trip_overview=result.trip_overview,
            activity_fit_notes=result.activity_fit_notes,
            daily_summaries=summaries,
            category_distribution=category_distribution(planned),
            rejected_count=len(rejected),
            dropped_indices=parsed.dropped,
        )

    # ---------- daily highlights ----------

    async def _summarize_day(self, day: DaySchedule, destination: str) -> str:
        text = await self.llm.complete(
            SUMMARY_SYSTEM_PROMPT,
            day_summary_prompt(day, destination),
            model=self.summary_model,
            temperature=0.7,
            max_tokens=500,
        )
        return text.strip()

    async def daily_summaries(self, schedule: Sequence[DaySchedule], destination: str) -> List[DailySummary]:
        days = [d for d in schedule if d.activities]
        results = await asyncio.gather(*(self._summarize_day(d, destination) for d in days), return_exceptions=True)
        out = []
        for day, result in zip(days, results):
            if isinstance(result, Exception) or not result:
                log.warning("Daily summary failed; using fallback", extra={
                    "request_id": get_request_id(), "day": day.day_number, "error": repr(result),
                })
                result = fallback_summary(day)
            out.append(DailySummary(day_number=day.day_number, summary=result, activities=[a.name for a in day.activities]))
        return out

    # ---------- single activity ----------

    async def generate_single_activity(self, req: SingleActivityRequest) -> PlannedActivity:
        rid = get_request_id()
        content = await self.llm.complete(JSON_SYSTEM_PROMPT, single_activity_prompt(req), model=self.summary_model)
        try:
            payload = loads_lenient(content)
        except ParseError as e:
            raise ActivityGenerationError("Failed to generate activity recommendation") from e

        if isinstance(payload, Mapping) and isinstance(payload.get("activity"), Mapping):
            payload = payload["activity"]
        elif isinstance(payload, Mapping) and isinstance(payload.get("activities"), list) and payload["activities"]:
            payload = payload["activities"][0]
        elif isinstance(payload, list) and payload:
            payload = payload[0]
        payload = unwrap_root(payload)
        if not isinstance(payload, Mapping):
            raise ActivityGenerationError("Failed to generate activity recommendation")

        raw = normalize_raw_activity(payload, req.currency)
        if self.marketplace is not None:
            raw = await self.marketplace.enrich(raw)

        result = validate_single(raw, req.tier, req.day_number, req.time_slot)
        if isinstance(result, Rejection):
            log.warning("Single activity rejected", extra={"request_id": rid, "reason": result.describe()})
            raise ActivityGenerationError(
                "Failed to generate activity recommendation",
                reason=result.reason.value,
                details=result.details,
            )

        excluded = {normalize_text(n) for n in req.exclude}
        if normalize_text(result.name) in excluded:
            raise ActivityGenerationError("Generated activity duplicates one already in the plan", name=result.name)

        scored = rank([result], req.preferences)[0]
        return plan_activity(scored, req.day_number, req.time_slot)
