from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from errors import LLMError
from models import LocalCostEstimate, PlanRequest, TierSummary
from request_context import get_request_id
from services.llm_client import JSON_SYSTEM_PROMPT, LLMClient
from services.normalizer import as_num
from services.sanitizer import loads_lenient
from services.tiers import TIERS

log = logging.getLogger("llm")

COST_CATEGORIES: Dict[str, Dict[str, Any]] = {
    "localTransportation": {
        "label": "local transportation",
        "include": ["Public transportation (buses, trains, metro)", "Taxis and ride-sharing",
                    "Car rentals", "Airport transfers"],
        "reference_unit": "unit",
    },
    "food": {
        "label": "daily food",
        "include": ["Local restaurants", "Cafes and street food", "Grocery stores", "Fine dining"],
        "reference_unit": "mealType",
    },
}


def default_tiers() -> Dict[str, TierSummary]:
    return {t: TierSummary(source="Default due to API error") for t in TIERS}


def cost_prompt(category: str, req: PlanRequest) -> str:
    spec = COST_CATEGORIES[category]
    dates = f"{req.start_date.isoformat()} to {req.end_date.isoformat()}" if req.start_date and req.end_date else f"{req.days} days"
    lines = [
        f"Estimate {spec['label']} costs in {req.destination} for {req.travelers} travelers.",
        "Details:",
        f"- Location: {req.destination}",
        f"- Duration: {dates}",
        f"- Travelers: {req.travelers}",
    ]
    if req.budget:
        lines.append(f"- Budget: {req.budget:g} {req.currency}")
    lines.append("Include:")
    lines.extend(f"- {item}" for item in spec["include"])
    lines += [
        f"All prices are numbers in {req.currency}.",
        "Return JSON only:",
        '{"%s": {"budget": {"min": 0, "max": 0, "average": 0, "confidence": 0.7, "source": "string", '
        '"references": [{"type": "string", "description": "string", "price": 0, "%s": "string"}]}, '
        '"medium": {}, "premium": {}}}' % (category, spec["reference_unit"]),
    ]
    return "\n".join(lines)


def _tier_summary(raw: Any) -> Optional[TierSummary]:
    if not isinstance(raw, Mapping):
        return None
    lo, hi, avg = as_num(raw.get("min")), as_num(raw.get("max")), as_num(raw.get("average"))
    if lo is None and hi is None and avg is None:
        return None
    lo = lo if lo is not None else (avg if avg is not None else hi)
    hi = hi if hi is not None else (avg if avg is not None else lo)
    if lo > hi:
        lo, hi = hi, lo
    if avg is None:
        avg = (lo + hi) / 2
    confidence = as_num(raw.get("confidence"))
    refs = raw.get("references")
    return TierSummary(
        min=max(lo, 0.0),
        max=max(hi, 0.0),
        average=round(max(avg, 0.0), 2),
        confidence=min(max(confidence if confidence is not None else 0.5, 0.0), 1.0),
        source=str(raw.get("source") or "Perplexity"),
        references=[r for r in refs if isinstance(r, dict)] if isinstance(refs, list) else [],
    )


def parse_cost_tiers(payload: Any, category: str) -> Dict[str, TierSummary]:
    if isinstance(payload, Mapping) and isinstance(payload.get(category), Mapping):
        payload = payload[category]
    if not isinstance(payload, Mapping):
        raise LLMError(f"{category} estimate is not a JSON object")
    out = default_tiers()
    parsed = 0
    for tier in TIERS:
        summary = _tier_summary(payload.get(tier))
        if summary is not None:
            out[tier] = summary
            parsed += 1
    if not parsed:
        raise LLMError(f"{category} estimate has no usable tiers")
    return out


class LocalCostEstimator:
    def __init__(self, llm: LLMClient, model: Optional[str] = None):
        self.llm = llm
        self.model = model

    async def _estimate(self, category: str, req: PlanRequest) -> Dict[str, TierSummary]:
        content = await self.llm.complete(JSON_SYSTEM_PROMPT, cost_prompt(category, req), model=self.model)
        return parse_cost_tiers(loads_lenient(content), category)

    async def estimate(self, req: PlanRequest) -> LocalCostEstimate:
        """Categories run concurrently; a failed one degrades to defaults, all failing raises."""
        rid = get_request_id()
        categories: List[str] = list(COST_CATEGORIES)
        results = await asyncio.gather(*(self._estimate(c, req) for c in categories), return_exceptions=True)

        out: Dict[str, Dict[str, TierSummary]] = {}
        failed = 0
        for category, result in zip(categories, results):
            if isinstance(result, Exception):
                failed += 1
                log.warning("Cost estimate failed; using defaults", extra={
                    "request_id": rid, "category": category, "error": str(result),
                })
                out[category] = default_tiers()
            else:
                out[category] = result
        if failed == len(categories):
            raise LLMError("Local cost estimation failed for every category")

        return LocalCostEstimate(
            currency=req.currency,
            local_transportation=out["localTransportation"],
            food=out["food"],
        )
