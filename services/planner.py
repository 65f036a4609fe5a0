"""
Trip planning: the activity pipeline, flight search and local cost estimates
run as concurrent branches under one overall deadline.

A failed optional branch is reported in `errors` and the plan still returns.
When the deadline passes the caller gets PlanTimeoutError; branches already in
flight are left to finish on their own and their results are discarded.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from config import settings
from errors import PlannerError, PlanTimeoutError
from models import Meta, PlanRequest, PlanResponse
from request_context import get_request_id
from services.activity_service import ActivityService
from services.allocator import DaySlotAllocator
from services.cost_estimator import LocalCostEstimator
from services.deduplicator import DedupConfig
from services.gds import FlightSearchService, GDSClient
from services.llm_client import PerplexityClient
from services.marketplace import MarketplaceClient
from services.rate_limiter import AdmissionQueue
from services.schedule_optimizer import LLMScheduleOptimizer

log = logging.getLogger("planner")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, PlannerError):
        return f"{exc.code}: {exc.message}"
    return f"{exc.__class__.__name__}: {exc}"


def _discard(task: asyncio.Task) -> None:
    # Retrieve late results so the loop does not report them as never retrieved.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.info("Late branch failed after deadline", extra={"error": _describe(exc)})


class TripPlanner:
    def __init__(
        self,
        activities: ActivityService,
        flights: Optional[FlightSearchService] = None,
        costs: Optional[LocalCostEstimator] = None,
        deadline_s: float = 120.0,
        closers: Optional[List[Callable[[], Awaitable[None]]]] = None,
    ):
        self.activities = activities
        self.flights = flights
        self.costs = costs
        self.deadline_s = deadline_s
        self._closers = list(closers or [])

    async def plan(self, req: PlanRequest) -> PlanResponse:
        rid = get_request_id()
        errors: Dict[str, str] = {}
        branches: Dict[str, Awaitable] = {"activities": self.activities.generate_plan(req)}

        if req.origin_code or req.destination_code:
            if self.flights is None:
                errors["flights"] = "flight search is not configured"
            elif not (req.origin_code and req.destination_code and req.start_date):
                errors["flights"] = "flight search needs originCode, destinationCode and startDate"
            else:
                branches["flights"] = self.flights.tiers_for(req)
        if self.costs is not None:
            branches["localCosts"] = self.costs.estimate(req)

        tasks = {name: asyncio.ensure_future(coro) for name, coro in branches.items()}
        done, pending = await asyncio.wait(tasks.values(), timeout=self.deadline_s)
        if pending:
            late = [name for name, t in tasks.items() if t in pending]
            for t in pending:
                t.add_done_callback(_discard)
            log.error("Plan deadline exceeded", extra={"request_id": rid, "deadline_s": self.deadline_s, "pending": late})
            raise PlanTimeoutError(f"Plan did not complete within {self.deadline_s:g}s", pending=late)

        results = {}
        for name, task in tasks.items():
            exc = task.exception()
            if exc is None:
                results[name] = task.result()
                continue
            if name == "activities":
                # the plan has no meaning without activities
                raise exc
            errors[name] = _describe(exc)
            log.warning("Plan branch failed", extra={"request_id": rid, "branch": name, "error": errors[name]})

        log.info("Plan complete", extra={"request_id": rid, "branches": list(tasks), "errors": list(errors)})
        return PlanResponse(
            activities=results.get("activities"),
            flights=results.get("flights"),
            local_costs=results.get("localCosts"),
            errors=errors,
            meta=Meta(request_id=rid),
        )

    async def aclose(self) -> None:
        for close in self._closers:
            try:
                await close()
            except Exception:
                log.warning("Client close failed", exc_info=True)


def build_planner() -> TripPlanner:
    """Wire the production collaborators from settings."""
    llm = PerplexityClient.from_settings()
    closers = [llm.aclose]

    marketplace = None
    if settings.marketplace_enabled:
        marketplace = MarketplaceClient.from_settings()
        closers.append(marketplace.aclose)

    flights = None
    if settings.gds_enabled:
        gds = GDSClient.from_settings(AdmissionQueue.from_settings())
        flights = FlightSearchService(gds)
        closers.append(flights.aclose)

    dedup = DedupConfig.from_settings()
    allocator = DaySlotAllocator(
        optimizer=LLMScheduleOptimizer(llm, model=settings.PERPLEXITY_MODEL, per_day=settings.ACTIVITIES_PER_DAY),
        per_day=settings.ACTIVITIES_PER_DAY,
        optimizer_timeout_s=settings.OPTIMIZER_TIMEOUT_S,
        dedup=dedup,
    )
    activities = ActivityService(
        llm,
        allocator=allocator,
        marketplace=marketplace,
        dedup=dedup,
        planning_model=settings.PERPLEXITY_MODEL,
        summary_model=settings.PERPLEXITY_SUMMARY_MODEL,
        enrichment_concurrency=settings.ENRICHMENT_CONCURRENCY,
    )
    planner = TripPlanner(
        activities,
        flights=flights,
        costs=LocalCostEstimator(llm, model=settings.PERPLEXITY_SUMMARY_MODEL),
        deadline_s=settings.PLAN_DEADLINE_S,
        closers=closers,
    )
    log.info("Planner built", extra={"marketplace": marketplace is not None, "gds": flights is not None})
    return planner
