# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class PlannerError(Exception):
    """Base for failures that reach the HTTP caller."""
    status_code: int = 500
    code: str = "planner_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ParseError(PlannerError):
    status_code = 502
    code = "parse_error"


class NoValidActivitiesError(PlannerError):
    status_code = 502
    code = "no_valid_activities"


class ActivityGenerationError(PlannerError):
    status_code = 502
    code = "activity_generation_failed"


class LLMError(PlannerError):
    status_code = 502
    code = "llm_unavailable"


class RateLimitExceeded(PlannerError):
    status_code = 503
    code = "rate_limited"


class ProviderUnavailable(PlannerError):
    status_code = 503
    code = "provider_unavailable"


class PlanTimeoutError(PlannerError):
    status_code = 504
    code = "plan_timeout"


# Recovered locally; never surfaced to the caller.

class EnrichmentMiss(Exception):
    pass


class OptimizationFailure(Exception):
    pass


class RejectionReason(str, Enum):
    MALFORMED = "malformed"
    MISSING_FIELD = "missing_field"
    PRICE_OUT_OF_BAND = "price_out_of_band"
    BOOKING_INVALID = "booking_invalid"
    HOURS_MISSING = "hours_missing"
    CONTACT_MISSING = "contact_missing"
    IMAGES_INVALID = "images_invalid"
    TOO_FEW_HIGHLIGHTS = "too_few_highlights"
    DAY_OUT_OF_RANGE = "day_out_of_range"
    NUMERIC_INVALID = "numeric_invalid"


@dataclass(frozen=True)
class Rejection:
    """Why a single raw activity was dropped by validation."""
    reason: RejectionReason
    name: Optional[str] = None
    details: List[str] = field(default_factory=list)
    index: Optional[int] = None

    def describe(self) -> str:
        label = self.name or "<unnamed>"
        if self.details:
            return f"{label}: {self.reason.value} ({', '.join(self.details)})"
        return f"{label}: {self.reason.value}"
