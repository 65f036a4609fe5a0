"""
End-to-end activity pipeline with a scripted LLM.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from errors import ActivityGenerationError, NoValidActivitiesError, ParseError
from models import PlanRequest, SingleActivityRequest
from services.activity_service import ActivityService, activity_prompt, fallback_summary
from services.allocator import DaySlotAllocator
from services.deduplicator import DedupConfig

from conftest import PARIS_NAMES, FakeLLM, make_raw

PINNED = {
    "name": "Moulin Rouge Cabaret Show",
    "location": "Pigalle",
    "dayNumber": 2,
    "timeSlot": "evening",
    "price": {"amount": 150, "currency": "USD"},
}


def _plan_request(**overrides):
    data = {
        "destination": "Paris",
        "days": 2,
        "preferences": {"interests": ["museum"]},
        "preselected_activities": [PINNED],
    }
    data.update(overrides)
    return PlanRequest(**data)


def _llm_payload():
    raws = [make_raw(n, p) for n, p in zip(PARIS_NAMES[:6], [45, 25, 120, 150, 95, 60])]
    raws.append(make_raw("Orsay Visit", contact=None))
    raws.append(make_raw("Louvre Museum Tickets"))
    return "```json\n" + json.dumps({"activities": raws}) + "\n```"


def _service(llm, **kwargs):
    kwargs.setdefault("allocator", DaySlotAllocator(dedup=DedupConfig()))
    kwargs.setdefault("dedup", DedupConfig())
    return ActivityService(llm, **kwargs)


class TestGeneratePlan:

    @pytest.mark.asyncio
    async def test_full_pipeline(self):
        llm = FakeLLM(_llm_payload(), fallback="A day of art and food.")
        service = _service(llm, planning_model="sonar-pro", summary_model="sonar")

        plan = await service.generate_plan(_plan_request())

        assert plan.rejected_count == 1
        names = [a.name for a in plan.activities]
        assert "Louvre Museum Tickets" not in names
        assert "Orsay Visit" not in names
        assert len(names) == 7

        scheduled = {(a.day_number, a.time_slot): a.name for d in plan.schedule for a in d.activities}
        assert scheduled[(2, "evening")] == "Moulin Rouge Cabaret Show"
        assert len(scheduled) == 6
        assert len(set(scheduled.values())) == 6

        assert [s.summary for s in plan.daily_summaries] == ["A day of art and food."] * 2
        assert set(plan.suggested_itineraries.model_dump()) == {"budget", "medium", "premium"}
        assert sum(c.count for c in plan.category_distribution.values()) == 7

    @pytest.mark.asyncio
    async def test_option_pool_uses_scheduled_cells(self):
        raws = [make_raw(n, p, dayNumber=2, timeSlot="evening")
                for n, p in zip(PARIS_NAMES[:6], [45, 25, 120, 150, 95, 60])]
        llm = FakeLLM(json.dumps({"activities": raws}), fallback="Summary.")

        plan = await _service(llm).generate_plan(_plan_request(preselected_activities=[]))

        scheduled = {a.name: (a.day_number, a.time_slot) for d in plan.schedule for a in d.activities}
        pooled = {a.name: (a.day_number, a.time_slot) for a in plan.activities}
        assert len(scheduled) == 6
        assert len(set(scheduled.values())) == 6
        assert all(pooled[name] == cell for name, cell in scheduled.items())
        assert len(pooled) == len(plan.activities)

        filled = [getattr(day, slot).name for day in plan.suggested_itineraries.premium
                  for slot in ("morning", "afternoon", "evening") if getattr(day, slot) is not None]
        assert sorted(filled) == sorted(scheduled)

    @pytest.mark.asyncio
    async def test_prompts_and_models(self):
        llm = FakeLLM(_llm_payload(), fallback="Summary.")
        service = _service(llm, planning_model="sonar-pro", summary_model="sonar")

        await service.generate_plan(_plan_request())

        first = llm.calls[0]
        assert first["model"] == "sonar-pro"
        assert "2-day trip to Paris" in first["user"]
        assert "Moulin Rouge Cabaret Show" in first["user"]
        summary_calls = llm.calls[1:]
        assert len(summary_calls) == 2
        assert all(c["model"] == "sonar" and c["temperature"] == 0.7 and c["max_tokens"] == 500 for c in summary_calls)

    @pytest.mark.asyncio
    async def test_summary_failure_uses_fallback_text(self):
        llm = FakeLLM(_llm_payload())

        plan = await _service(llm).generate_plan(_plan_request())

        day_one = plan.schedule[0]
        assert plan.daily_summaries[0].summary == fallback_summary(day_one)
        assert plan.daily_summaries[0].summary.startswith("Day 1 includes 3 activities: ")

    @pytest.mark.asyncio
    async def test_nothing_valid(self):
        raws = [make_raw(n, contact=None) for n in PARIS_NAMES[:3]]
        llm = FakeLLM(json.dumps({"activities": raws}))

        with pytest.raises(NoValidActivitiesError) as exc:
            await _service(llm).generate_plan(_plan_request())

        assert len(exc.value.context["rejected"]) == 3

    @pytest.mark.asyncio
    async def test_unparseable_llm_output(self):
        llm = FakeLLM("I could not find any activities for that destination.")

        with pytest.raises(ParseError):
            await _service(llm).generate_plan(_plan_request())

    @pytest.mark.asyncio
    async def test_enrichment_runs_per_activity_and_survives_a_crash(self):
        def enrich(raw):
            if raw["name"] == "Montmartre Walking Tour":
                raise RuntimeError("marketplace bug")
            return {**raw, "isVerified": True, "verificationStatus": "verified"}

        marketplace = SimpleNamespace(enrich=AsyncMock(side_effect=enrich))
        llm = FakeLLM(_llm_payload(), fallback="Summary.")

        plan = await _service(llm, marketplace=marketplace).generate_plan(_plan_request(preselected_activities=[]))

        assert marketplace.enrich.await_count == 8
        verified = {a.name: a.is_verified for a in plan.activities}
        assert verified["Louvre Museum Guided Tour"] is True
        assert verified["Montmartre Walking Tour"] is False


class TestSingleActivity:

    @pytest.mark.asyncio
    async def test_generates_and_places_one_activity(self):
        llm = FakeLLM(json.dumps({"activity": make_raw()}))
        req = SingleActivityRequest(destination="Paris", day_number=2, time_slot="afternoon", tier="medium")

        activity = await _service(llm).generate_single_activity(req)

        assert activity.name == "Louvre Museum Guided Tour"
        assert (activity.day_number, activity.time_slot, activity.start_time) == (2, "afternoon", "14:00")
        assert activity.tier == "medium"
        assert "medium activity in Paris" in llm.calls[0]["user"]

    @pytest.mark.asyncio
    async def test_accepts_a_bare_list(self):
        llm = FakeLLM(json.dumps([make_raw(price=20)]))
        req = SingleActivityRequest(destination="Paris", tier="budget")

        activity = await _service(llm).generate_single_activity(req)

        assert activity.tier == "budget"
        assert activity.time_slot == "morning"

    @pytest.mark.asyncio
    async def test_price_outside_requested_tier(self):
        llm = FakeLLM(json.dumps({"activity": make_raw(price=45)}))
        req = SingleActivityRequest(destination="Paris", tier="premium")

        with pytest.raises(ActivityGenerationError) as exc:
            await _service(llm).generate_single_activity(req)

        assert exc.value.context["reason"] == "price_out_of_band"

    @pytest.mark.asyncio
    async def test_excluded_name_is_rejected(self):
        llm = FakeLLM(json.dumps({"activity": make_raw()}))
        req = SingleActivityRequest(destination="Paris", exclude=["Louvre Museum Guided Tour!"])

        with pytest.raises(ActivityGenerationError):
            await _service(llm).generate_single_activity(req)

    @pytest.mark.asyncio
    async def test_prose_is_a_generation_error(self):
        llm = FakeLLM("Sorry, I can't recommend anything right now.")

        with pytest.raises(ActivityGenerationError):
            await _service(llm).generate_single_activity(SingleActivityRequest(destination="Paris"))


def test_activity_prompt_lists_bands_and_requirements():
    prompt = activity_prompt(_plan_request(budget=600, preselected_activities=[]))

    assert "budget 15-30, medium 30-100, premium 100-300" in prompt
    assert "at least 6 activities" in prompt
    assert "interests: museum" in prompt
    assert "USD 600" in prompt
