from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import (
    BaseModel,
    Field,
    ConfigDict,
    field_validator,
    model_validator,
    conint,
    confloat,
)
from pydantic.alias_generators import to_camel

from services.categories import FALLBACK_CATEGORY
from services.normalizer import normalize_raw_activity
from services.text_similarity import normalize_text
from services.tiers import coerce_tier

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
IATA_RE = re.compile(r"^[A-Z]{3}$")

TimeSlot = Literal["morning", "afternoon", "evening"]
Tier = Literal["budget", "medium", "premium"]

# Wire shape is camelCase; snake_case field names are accepted on input too.
WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")
STRICT_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

# -----------------------------
# Activity atoms
# -----------------------------

class Price(BaseModel):
    model_config = WIRE
    amount: confloat(ge=0) = 0.0
    currency: str = "USD"

class BookingInfo(BaseModel):
    model_config = WIRE
    url: Optional[str] = None
    method: Optional[str] = None
    provider: Optional[str] = None
    product_code: Optional[str] = None
    cancellation_policy: Optional[str] = None
    instant_confirmation: Optional[bool] = None
    mobile_ticket: Optional[bool] = None
    languages: List[str] = Field(default_factory=list)
    min_participants: Optional[conint(ge=0)] = None
    max_participants: Optional[conint(ge=0)] = None

    @field_validator("languages", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v

class OperatingHours(BaseModel):
    model_config = WIRE
    weekday: Optional[str] = None
    weekend: Optional[str] = None

class Contact(BaseModel):
    model_config = WIRE
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None

class Images(BaseModel):
    model_config = WIRE
    main: Optional[str] = None
    gallery: List[str] = Field(default_factory=list)

class Details(BaseModel):
    model_config = WIRE
    highlights: List[str] = Field(default_factory=list)
    inclusions: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)

    @field_validator("highlights", "inclusions", "exclusions", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v

# -----------------------------
# Activity
# -----------------------------

class Activity(BaseModel):
    """A validated activity; `duration` is always in hours."""
    model_config = WIRE

    name: str
    description: str = ""
    duration: confloat(ge=0) = 0.0
    price: Optional[Price] = None
    category: str = FALLBACK_CATEGORY
    location: str = ""
    address: Optional[str] = None

    day_number: Optional[conint(ge=1)] = None
    time_slot: Optional[TimeSlot] = None
    start_time: Optional[str] = None
    tier: Optional[Tier] = None

    rating: confloat(ge=0, le=5) = 0.0
    number_of_reviews: conint(ge=0) = 0
    selected: bool = False

    booking: Optional[BookingInfo] = None
    operating_hours: Optional[OperatingHours] = None
    contact: Optional[Contact] = None
    images: Optional[Images] = None
    details: Optional[Details] = None
    reference_url: Optional[str] = None
    commentary: Optional[str] = None
    itinerary_highlight: Optional[str] = None

    is_verified: bool = False
    verification_status: str = "pending"

    preference_score: Optional[float] = None
    matched_preferences: List[str] = Field(default_factory=list)
    scoring_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_llm_shape(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_raw_activity(data)
        return data

    @field_validator("matched_preferences", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v

    @property
    def price_amount(self) -> float:
        return self.price.amount if self.price else 0.0

    @property
    def key(self) -> str:
        """Identity used to avoid placing the same activity twice."""
        return f"{normalize_text(self.name)}|{normalize_text(self.location)}"

class PlannedActivity(Activity):
    """An activity placed on the day x slot grid."""
    day_number: conint(ge=1)
    time_slot: TimeSlot
    start_time: str
    tier: Tier

# -----------------------------
# Requests
# -----------------------------

class TravelPreferences(BaseModel):
    model_config = STRICT_WIRE

    interests: List[str] = Field(default_factory=list)
    travel_style: Optional[Tier] = None
    accessibility_needs: List[str] = Field(default_factory=list)
    dietary_restrictions: List[str] = Field(default_factory=list)

    @field_validator("travel_style", mode="before")
    @classmethod
    def _coerce_style(cls, v):
        if v is None or v == "":
            return None
        tier = coerce_tier(v)
        if tier is None:
            raise ValueError("travel_style must be budget, medium or premium")
        return tier

    @field_validator("interests", "accessibility_needs", "dietary_restrictions", mode="before")
    @classmethod
    def _validate_terms(cls, v):
        """Preference terms are interpolated into LLM prompts."""
        from security import validate_preference_terms
        return validate_preference_terms([] if v is None else v)

class _TripRequest(BaseModel):
    model_config = STRICT_WIRE

    destination: str
    currency: str = "USD"
    preferences: TravelPreferences = Field(default_factory=TravelPreferences)

    @field_validator("destination")
    @classmethod
    def _validate_destination(cls, v):
        from security import validate_destination
        return validate_destination(v)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v):
        v = (v or "").upper()
        if not CURRENCY_RE.match(v):
            raise ValueError("currency must be a 3-letter ISO code (e.g. USD, GBP, EUR)")
        return v

class PlanRequest(_TripRequest):
    days: Optional[conint(ge=1, le=14)] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    budget: Optional[confloat(ge=0)] = Field(default=None, description="Total activity budget for the trip.")
    travelers: conint(ge=1, le=12) = 1

    preselected_activities: List[Activity] = Field(default_factory=list)

    # Flight search inputs; the flight branch is skipped without them.
    origin_code: Optional[str] = None
    destination_code: Optional[str] = None

    @field_validator("preselected_activities", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v

    @field_validator("origin_code", "destination_code")
    @classmethod
    def _validate_iata(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        if not IATA_RE.match(v):
            raise ValueError("airport codes must be 3-letter IATA codes")
        return v

    @model_validator(mode="after")
    def _validate_dates(self) -> "PlanRequest":
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date.")
        if self.start_date and self.end_date:
            expected = (self.end_date - self.start_date).days + 1
            if self.days is None:
                self.days = expected
            elif expected != self.days:
                raise ValueError(f"end_date implies {expected} days but days={self.days}.")
        if self.days is None:
            raise ValueError("Provide either days or start_date and end_date.")
        return self

class SingleActivityRequest(_TripRequest):
    day_number: conint(ge=1) = 1
    time_slot: TimeSlot = "morning"
    tier: Tier = "medium"
    category: Optional[str] = None
    budget: Optional[confloat(ge=0)] = None
    exclude: List[str] = Field(default_factory=list, description="Names already in the plan.")

    @field_validator("tier", mode="before")
    @classmethod
    def _coerce_tier(cls, v):
        return coerce_tier(v) or v

    @field_validator("exclude", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v

# -----------------------------
# Responses
# -----------------------------

class DayOptions(BaseModel):
    model_config = WIRE
    day_number: conint(ge=1)
    morning: Optional[PlannedActivity] = None
    afternoon: Optional[PlannedActivity] = None
    evening: Optional[PlannedActivity] = None
    morning_options: List[PlannedActivity] = Field(default_factory=list)
    afternoon_options: List[PlannedActivity] = Field(default_factory=list)
    evening_options: List[PlannedActivity] = Field(default_factory=list)

class SuggestedItineraries(BaseModel):
    model_config = WIRE
    budget: List[DayOptions] = Field(default_factory=list)
    medium: List[DayOptions] = Field(default_factory=list)
    premium: List[DayOptions] = Field(default_factory=list)

class DaySchedule(BaseModel):
    model_config = WIRE
    day_number: conint(ge=1)
    activities: List[PlannedActivity] = Field(default_factory=list)

class ScheduleResult(BaseModel):
    model_config = WIRE
    schedule: List[DaySchedule] = Field(default_factory=list)
    trip_overview: str = ""
    activity_fit_notes: List[str] = Field(default_factory=list)

class DailySummary(BaseModel):
    model_config = WIRE
    day_number: conint(ge=1)
    summary: str
    activities: List[str] = Field(default_factory=list)

class CategoryShare(BaseModel):
    model_config = WIRE
    count: conint(ge=0) = 0
    percentage: confloat(ge=0, le=100) = 0.0
    by_tier: Dict[str, int] = Field(default_factory=dict)

class ActivityPlan(BaseModel):
    model_config = WIRE
    destination: str
    days: conint(ge=1)
    currency: str = "USD"
    activities: List[PlannedActivity] = Field(default_factory=list)
    suggested_itineraries: SuggestedItineraries = Field(default_factory=SuggestedItineraries)
    schedule: List[DaySchedule] = Field(default_factory=list)
    trip_overview: str = ""
    activity_fit_notes: List[str] = Field(default_factory=list)
    daily_summaries: List[DailySummary] = Field(default_factory=list)
    category_distribution: Dict[str, CategoryShare] = Field(default_factory=dict)
    rejected_count: conint(ge=0) = 0
    dropped_indices: List[int] = Field(default_factory=list)

class TierSummary(BaseModel):
    model_config = WIRE
    min: confloat(ge=0) = 0.0
    max: confloat(ge=0) = 0.0
    average: confloat(ge=0) = 0.0
    confidence: confloat(ge=0, le=1) = 0.0
    source: str = ""
    references: List[Dict[str, Any]] = Field(default_factory=list)

class FlightTiers(BaseModel):
    model_config = WIRE
    budget: TierSummary = Field(default_factory=TierSummary)
    medium: TierSummary = Field(default_factory=TierSummary)
    premium: TierSummary = Field(default_factory=TierSummary)
    search_url: Optional[str] = None

class LocalCostEstimate(BaseModel):
    model_config = WIRE
    currency: str = "USD"
    local_transportation: Dict[str, TierSummary] = Field(default_factory=dict)
    food: Dict[str, TierSummary] = Field(default_factory=dict)

class Meta(BaseModel):
    model_config = WIRE
    schema_version: str = "1.0.0"
    generated_at_iso: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    request_id: str = "-"

class PlanResponse(BaseModel):
    model_config = WIRE
    activities: Optional[ActivityPlan] = None
    flights: Optional[FlightTiers] = None
    local_costs: Optional[LocalCostEstimate] = None
    errors: Dict[str, str] = Field(default_factory=dict)
    meta: Meta = Field(default_factory=Meta)
