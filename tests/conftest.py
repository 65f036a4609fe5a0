"""
Shared fixtures for the activity planner tests.

- Test environment (a dummy LLM key so settings load without a real one)
- FakeLLM: a scripted stand-in for the Perplexity client
- Factories for raw LLM activities and validated Activity objects
"""
import os

os.environ.setdefault("PERPLEXITY_API_KEY", "test-key")

import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from errors import LLMError
from models import Activity, TravelPreferences
from services.scorer import ScoredActivity, rank


class FakeLLM:
    """
    Replays scripted completions in call order.

    A scripted Exception is raised instead of returned. When the script runs
    out, `fallback` is returned (or LLMError raised if there is none). A
    `handler(system, user)` takes precedence over the script when given.
    """

    def __init__(self, *responses: Any, fallback: Optional[str] = None,
                 handler: Optional[Callable[[str, str], Any]] = None):
        self.responses: List[Any] = list(responses)
        self.fallback = fallback
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system, user, *, model=None, temperature=None, max_tokens=None):
        self.calls.append({
            "system": system,
            "user": user,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.handler is not None:
            result = self.handler(system, user)
        elif self.responses:
            result = self.responses.pop(0)
        elif self.fallback is not None:
            result = self.fallback
        else:
            raise LLMError("no scripted completion left")
        if isinstance(result, Exception):
            raise result
        return result


def make_raw(name: str = "Louvre Museum Guided Tour", price: float = 45.0, **overrides) -> Dict[str, Any]:
    """A raw LLM activity that passes every validation rule."""
    slug = name.lower().replace(" ", "-")
    raw = {
        "name": name,
        "description": f"{name}: a well-organised visit with a local expert.",
        "duration": 2,
        "price": {"amount": price, "currency": "USD"},
        "category": "Cultural & Historical",
        "location": f"{name} venue",
        "address": "1 Rue de Rivoli, 75001 Paris",
        "rating": 4.6,
        "numberOfReviews": 850,
        "keyHighlights": [
            "Expert local guide",
            "Small group",
            "Skip the queue",
            "Historic interiors",
            "Free cancellation",
        ],
        "operatingHours": {"weekday": "09:00-18:00", "weekend": "10:00-17:00"},
        "contact": {"phone": "+33 1 23 45 67 89", "email": "info@example.com"},
        "booking": {"url": f"https://booking.example.com/{slug}", "method": "online"},
        "images": {
            "main": f"https://img.example.com/{slug}.jpg",
            "gallery": [f"https://img.example.com/{slug}-2.jpg"],
        },
    }
    raw.update(overrides)
    return raw


def make_activity(name: str = "Louvre Museum Guided Tour", price: float = 45.0, **overrides) -> Activity:
    return Activity.model_validate(make_raw(name, price, **overrides))


def make_scored(activities: List[Activity], preferences: Optional[TravelPreferences] = None) -> List[ScoredActivity]:
    return rank(activities, preferences or TravelPreferences())


PARIS_NAMES = [
    "Louvre Museum Guided Tour",
    "Montmartre Walking Tour",
    "Seine River Dinner Cruise",
    "Versailles Palace Day Trip",
    "Cooking Class in Le Marais",
    "Eiffel Tower Summit Access",
    "Jazz Night at Caveau de la Huchette",
    "Musee d'Orsay Impressionist Visit",
    "Latin Quarter Food Tour",
]


@pytest.fixture
def raw_activity():
    return make_raw()


@pytest.fixture
def paris_raws():
    prices = [45, 25, 120, 150, 95, 60, 35, 20, 80]
    return [make_raw(n, p) for n, p in zip(PARIS_NAMES, prices)]


@pytest.fixture
def paris_activities(paris_raws):
    return [Activity.model_validate(r) for r in paris_raws]


@pytest.fixture
def activities_json(paris_raws):
    return json.dumps({"activities": paris_raws})


@pytest.fixture
def fake_llm():
    return FakeLLM()
