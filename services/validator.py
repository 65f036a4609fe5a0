from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from errors import Rejection, RejectionReason
from models import Activity
from request_context import get_request_id
from services.normalizer import as_num, normalize_raw_activity
from services.tiers import TIERS, strict_band_tier, within_strict_band

log = logging.getLogger("pipeline")

URL_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://\S+$")
MIN_HIGHLIGHTS = 5

REQUIRED_FIELDS = ("name", "description", "price", "location")
SINGLE_REQUIRED_FIELDS = ("name", "description", "price", "location", "duration", "rating")


def _missing(data: Mapping[str, Any], fields: Sequence[str]) -> List[str]:
    return [f for f in fields if data.get(f) in (None, "", [], {})]


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and bool(URL_SCHEME_RE.match(value.strip()))


def _business_checks(activity: Activity, days: Optional[int]) -> Optional[Tuple[RejectionReason, List[str]]]:
    price = activity.price_amount
    if activity.tier:
        if not within_strict_band(price, activity.tier):
            return RejectionReason.PRICE_OUT_OF_BAND, [f"{price:g} outside the {activity.tier} band"]
    elif strict_band_tier(price) is None:
        return RejectionReason.PRICE_OUT_OF_BAND, [f"{price:g} outside every tier band"]

    booking = activity.booking
    problems = []
    if booking is None or not _is_url(booking.url):
        problems.append("booking.url")
    if booking is None or not booking.method:
        problems.append("booking.method")
    if problems:
        return RejectionReason.BOOKING_INVALID, problems

    hours = activity.operating_hours
    problems = [f"operatingHours.{k}" for k in ("weekday", "weekend") if hours is None or not getattr(hours, k)]
    if problems:
        return RejectionReason.HOURS_MISSING, problems

    contact = activity.contact
    if contact is None or not (contact.phone or contact.email):
        return RejectionReason.CONTACT_MISSING, ["contact.phone", "contact.email"]

    images = activity.images
    problems = []
    if images is None or not _is_url(images.main):
        problems.append("images.main")
    if images is None or not images.gallery:
        problems.append("images.gallery")
    if problems:
        return RejectionReason.IMAGES_INVALID, problems

    highlights = activity.details.highlights if activity.details else []
    if len(highlights) < MIN_HIGHLIGHTS:
        return RejectionReason.TOO_FEW_HIGHLIGHTS, [f"{len(highlights)} of {MIN_HIGHLIGHTS}"]

    if days is not None and activity.day_number is not None and not 1 <= activity.day_number <= days:
        return RejectionReason.DAY_OUT_OF_RANGE, [f"day {activity.day_number} of {days}"]
    return None


def validate(raw: Mapping[str, Any], days: Optional[int] = None, index: Optional[int] = None) -> Union[Activity, Rejection]:
    """
    Enforce the activity schema and business rules on one raw object.

    Returns the validated Activity, or a Rejection naming the first failed
    check. Never raises and never accepts an activity partially.
    """
    data = normalize_raw_activity(raw)
    name = data.get("name") if isinstance(data.get("name"), str) else None

    missing = _missing(data, REQUIRED_FIELDS)
    if missing:
        return Rejection(RejectionReason.MISSING_FIELD, name, missing, index)

    try:
        activity = Activity.model_validate(data)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        return Rejection(RejectionReason.MALFORMED, name, fields, index)

    failed = _business_checks(activity, days)
    if failed:
        reason, details = failed
        return Rejection(reason, name, details, index)
    return activity


def validate_batch(raws: Sequence[Mapping[str, Any]], days: Optional[int] = None) -> Tuple[List[Activity], List[Rejection]]:
    rid = get_request_id()
    accepted: List[Activity] = []
    rejected: List[Rejection] = []
    for i, raw in enumerate(raws):
        result = validate(raw, days=days, index=i)
        if isinstance(result, Rejection):
            rejected.append(result)
        else:
            accepted.append(result)

    if rejected:
        by_reason: Dict[str, int] = {}
        for r in rejected:
            by_reason[r.reason.value] = by_reason.get(r.reason.value, 0) + 1
        log.warning("Activities rejected by validation", extra={
            "request_id": rid,
            "accepted": len(accepted),
            "rejected": len(rejected),
            "by_reason": by_reason,
            "samples": [r.describe() for r in rejected[:5]],
        })
    log.info("Validation complete", extra={"request_id": rid, "accepted": len(accepted), "rejected": len(rejected)})
    return accepted, rejected


def validate_single(raw: Mapping[str, Any], tier: str, day_number: int, time_slot: str) -> Union[Activity, Rejection]:
    """
    Stricter check for a single generated activity.

    Fewer fields are required than for a whole plan, but any missing or
    out-of-range numeric field rejects outright: there is nothing to average
    across.
    """
    data = normalize_raw_activity(raw)
    name = data.get("name") if isinstance(data.get("name"), str) else None

    missing = _missing(data, SINGLE_REQUIRED_FIELDS)
    if missing:
        return Rejection(RejectionReason.MISSING_FIELD, name, missing)

    problems = []
    price = as_num((data.get("price") or {}).get("amount"))
    if price is None or price < 0:
        problems.append("price.amount")
    duration = as_num(data.get("duration"))
    if duration is None or not 0 < duration <= 24:
        problems.append("duration")
    rating = as_num(data.get("rating"))
    if rating is None or not 0 <= rating <= 5:
        problems.append("rating")
    reviews = data.get("numberOfReviews")
    if reviews is not None and reviews < 0:
        problems.append("numberOfReviews")
    if problems:
        return Rejection(RejectionReason.NUMERIC_INVALID, name, problems)

    if tier not in TIERS or not within_strict_band(price, tier):
        return Rejection(RejectionReason.PRICE_OUT_OF_BAND, name, [f"{price:g} outside the {tier} band"])

    data.update({"tier": tier, "dayNumber": day_number, "timeSlot": time_slot})
    try:
        return Activity.model_validate(data)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        return Rejection(RejectionReason.MALFORMED, name, fields)
