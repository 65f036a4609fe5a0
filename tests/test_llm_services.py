"""
LLM-backed collaborators: the Perplexity client, the schedule optimizer and
local cost estimates.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from errors import LLMError, OptimizationFailure
from models import PlanRequest, TravelPreferences
from services.cost_estimator import LocalCostEstimator, parse_cost_tiers
from services.llm_client import PerplexityClient, _strip_code_fences
from services.schedule_optimizer import LLMScheduleOptimizer, parse_schedule, schedule_prompt

from conftest import PARIS_NAMES, FakeLLM, make_activity, make_scored


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _openai_stub(result=None, error=None):
    stub = MagicMock()
    stub.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    stub.close = AsyncMock()
    return stub


class TestPerplexityClient:

    def test_requires_a_key(self):
        with pytest.raises(LLMError):
            PerplexityClient(api_key="")

    def test_code_fences_are_stripped(self):
        assert _strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert _strip_code_fences("plain") == "plain"
        assert _strip_code_fences(None) == ""

    @pytest.mark.asyncio
    async def test_complete_passes_model_and_overrides(self):
        stub = _openai_stub(_completion('```json\n{"activities": []}\n```'))
        client = PerplexityClient(api_key="k", model="sonar-pro", client=stub)

        content = await client.complete("system", "user", model="sonar", temperature=0.7, max_tokens=500)

        assert content == '{"activities": []}'
        kwargs = stub.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "sonar"
        assert kwargs["temperature"] == 0.7
        assert kwargs["max_tokens"] == 500
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    @pytest.mark.asyncio
    async def test_defaults_apply(self):
        stub = _openai_stub(_completion("ok"))
        client = PerplexityClient(api_key="k", model="sonar-pro", temperature=0.1, max_tokens=4000, client=stub)

        await client.complete("s", "u")

        kwargs = stub.chat.completions.create.await_args.kwargs
        assert (kwargs["model"], kwargs["temperature"], kwargs["max_tokens"]) == ("sonar-pro", 0.1, 4000)

    @pytest.mark.asyncio
    async def test_provider_error_becomes_llm_error(self):
        client = PerplexityClient(api_key="k", client=_openai_stub(error=OpenAIError("boom")))

        with pytest.raises(LLMError):
            await client.complete("s", "u")

    @pytest.mark.asyncio
    async def test_empty_completion_is_an_error(self):
        client = PerplexityClient(api_key="k", client=_openai_stub(_completion("   ")))

        with pytest.raises(LLMError):
            await client.complete("s", "u")

    @pytest.mark.asyncio
    async def test_aclose(self):
        stub = _openai_stub()
        await PerplexityClient(api_key="k", client=stub).aclose()
        stub.close.assert_awaited_once()


class TestScheduleOptimizer:

    def test_parse_day_grouped_schedule(self):
        plan = parse_schedule({
            "schedule": [
                {"dayNumber": 1, "activities": [{"name": "Louvre Museum Guided Tour", "timeSlot": "Morning"}]},
                {"day": "2", "activities": [{"title": "Seine River Dinner Cruise", "slot": "evening"}, "junk"]},
            ],
            "tripOverview": "Museums then the river.",
            "activityFitNotes": "One note",
        })

        assert [(p.day_number, p.time_slot, p.name) for p in plan.placements] == [
            (1, "morning", "Louvre Museum Guided Tour"),
            (2, "evening", "Seine River Dinner Cruise"),
        ]
        assert plan.trip_overview == "Museums then the river."
        assert plan.activity_fit_notes == ["One note"]

    def test_parse_flat_list(self):
        plan = parse_schedule([{"name": "Orsay", "dayNumber": 3, "timeSlot": "afternoon"}])
        assert plan.placements[0].day_number == 3

    @pytest.mark.parametrize("payload", [{"schedule": []}, "nope", [{"name": "Orsay"}]])
    def test_no_placements_is_a_failure(self, payload):
        with pytest.raises(OptimizationFailure):
            parse_schedule(payload)

    def test_prompt_lists_pinned_and_candidates(self):
        pinned = make_scored([make_activity("Moulin Rouge Cabaret Show", selected=True, dayNumber=2, timeSlot="evening")])
        candidates = make_scored([make_activity(n) for n in PARIS_NAMES[:3]])

        prompt = schedule_prompt(pinned, candidates, 3, TravelPreferences(interests=["art"]), "Paris")

        assert "3-day activity schedule in Paris" in prompt
        assert "- Day 2 evening: Moulin Rouge Cabaret Show" in prompt
        assert all(n in prompt for n in PARIS_NAMES[:3])
        assert "Traveler interests: art." in prompt

    @pytest.mark.asyncio
    async def test_optimize_uses_the_llm(self):
        payload = {"schedule": [{"dayNumber": 1, "activities": [{"name": PARIS_NAMES[0], "timeSlot": "morning"}]}]}
        llm = FakeLLM("Here you go: " + json.dumps(payload))
        optimizer = LLMScheduleOptimizer(llm, model="sonar-pro")

        plan = await optimizer.optimize([], make_scored([make_activity(PARIS_NAMES[0])]), 1, TravelPreferences())

        assert plan.placements[0].name == PARIS_NAMES[0]
        assert llm.calls[0]["model"] == "sonar-pro"


COST_JSON = {
    "localTransportation": {
        "budget": {"min": 5, "max": 15, "average": 10, "confidence": 0.8, "source": "RATP",
                   "references": [{"type": "metro", "description": "Single ticket", "price": 2.15, "unit": "ride"}]},
        "medium": {"min": 20, "max": 40},
        "premium": {"average": 120},
    }
}

FOOD_JSON = {"food": {"budget": {"min": 25, "max": 40, "average": 32}}}


def _cost_handler(transport, food):
    def handler(system, user):
        return transport if "local transportation" in user else food
    return handler


class TestLocalCosts:

    def test_parse_fills_missing_bounds(self):
        tiers = parse_cost_tiers(COST_JSON, "localTransportation")

        assert tiers["budget"].references[0]["price"] == 2.15
        assert (tiers["medium"].min, tiers["medium"].max, tiers["medium"].average) == (20, 40, 30)
        assert (tiers["premium"].min, tiers["premium"].max) == (120, 120)
        assert tiers["premium"].confidence == 0.5

    def test_parse_without_tiers_fails(self):
        with pytest.raises(LLMError):
            parse_cost_tiers({"food": {"cheap": {"min": 1}}}, "food")

    @pytest.mark.asyncio
    async def test_estimate_runs_both_categories(self):
        llm = FakeLLM(handler=_cost_handler(json.dumps(COST_JSON), json.dumps(FOOD_JSON)))
        req = PlanRequest(destination="Paris", days=3, currency="EUR", travelers=2)

        estimate = await LocalCostEstimator(llm).estimate(req)

        assert estimate.currency == "EUR"
        assert estimate.local_transportation["budget"].average == 10
        assert estimate.food["budget"].average == 32
        assert estimate.food["premium"].source == "Default due to API error"
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_one_failed_category_degrades_to_defaults(self):
        llm = FakeLLM(handler=_cost_handler(json.dumps(COST_JSON), LLMError("timeout")))

        estimate = await LocalCostEstimator(llm).estimate(PlanRequest(destination="Paris", days=3))

        assert estimate.local_transportation["medium"].max == 40
        assert all(t.source == "Default due to API error" for t in estimate.food.values())

    @pytest.mark.asyncio
    async def test_every_category_failing_raises(self):
        llm = FakeLLM(handler=_cost_handler("no idea", "no idea"))

        with pytest.raises(LLMError):
            await LocalCostEstimator(llm).estimate(PlanRequest(destination="Paris", days=3))
