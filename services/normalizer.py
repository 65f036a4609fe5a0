# services/normalizer.py
"""
Field-level repair of raw activity objects.

LLM and marketplace payloads spell the same field half a dozen ways and mix
units. Everything here maps a raw dict onto the canonical camelCase shape the
Activity model expects. The mapping is idempotent: feeding its own output back
in returns an equal dict.
"""
from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from services.categories import TIME_SLOTS, normalize_category
from services.tiers import coerce_tier

_RANGE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:-|–|to)\s*(\d+(?:\.\d+)?)")
_NUM_RE = re.compile(r"-?\d+(?:\.\d+)?")
_HOURS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:h|hr|hrs|hour|hours)\b")
_MINUTES_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:m|min|mins|minute|minutes)\b")
_DAYS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:d|day|days)\b")
_ISO_DURATION_RE = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:\d+S)?)?$", re.IGNORECASE)

_CURRENCY_SYMBOLS = {"€": "EUR", "£": "GBP", "$": "USD", "¥": "JPY", "₹": "INR"}

# Alternate spellings (after snake_case -> camelCase) onto canonical keys.
_KEY_VARIANTS: Dict[str, str] = {
    "title": "name",
    "activityName": "name",
    "day": "dayNumber",
    "preferredTimeOfDay": "timeSlot",
    "timeOfDay": "timeSlot",
    "slot": "timeSlot",
    "priceCategory": "tier",
    "priceTier": "tier",
    "priceLevel": "tier",
    "pricePerPerson": "price",
    "cost": "price",
    "estimatedCost": "price",
    "numReviews": "numberOfReviews",
    "reviewCount": "numberOfReviews",
    "totalReviews": "numberOfReviews",
    "openingHours": "operatingHours",
    "bookingInfo": "booking",
    "contactInfo": "contact",
    "exactAddress": "address",
    "durationHours": "duration",
}

_MINUTE_KEYS = ("durationMinutes", "durationInMinutes", "expectedDuration")
_HIGHLIGHT_KEYS = ("keyHighlights", "highlights")

_BOOKING_VARIANTS = {"bookingUrl": "url", "link": "url", "bookingLink": "url", "type": "method", "bookingMethod": "method"}
_HOURS_VARIANTS = {"weekdays": "weekday", "weekends": "weekend"}
_CONTACT_VARIANTS = {"phoneNumber": "phone", "telephone": "phone", "emailAddress": "email"}
_IMAGE_VARIANTS = {"mainImage": "main", "primary": "main", "images": "gallery"}

# ---------- numbers ----------

def as_num(x: Any) -> Optional[float]:
    """Best-effort float; ranges average, 'free' is 0, NaN and inf are None."""
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, (int, float)):
        f = float(x)
        return None if math.isnan(f) or math.isinf(f) else f
    if isinstance(x, str):
        s = x.strip().lower().replace(",", "")
        if not s:
            return None
        if s in {"free", "included", "complimentary"}:
            return 0.0
        m = _RANGE_RE.search(s)
        if m:
            return (float(m.group(1)) + float(m.group(2))) / 2
        m = _NUM_RE.search(s)
        if m:
            return float(m.group(0))
    return None

def as_int(x: Any) -> Optional[int]:
    if isinstance(x, dict):
        x = x.get("totalReviews", x.get("total_reviews", x.get("count")))
    n = as_num(x)
    return None if n is None else int(round(n))

def parse_price(value: Any, default_currency: str = "USD") -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if hasattr(value, "amount") and hasattr(value, "currency"):
        return {"amount": value.amount, "currency": value.currency}
    if isinstance(value, dict):
        amount = as_num(value.get("amount", value.get("value")))
        if amount is None:
            lo = as_num(value.get("min", value.get("amount_min", value.get("amountMin"))))
            hi = as_num(value.get("max", value.get("amount_max", value.get("amountMax"))))
            if lo is not None and hi is not None:
                amount = (lo + hi) / 2
            else:
                amount = lo if lo is not None else hi
        if amount is None:
            return None
        currency = str(value.get("currency") or default_currency).upper()
        return {"amount": max(amount, 0.0), "currency": currency}
    amount = as_num(value)
    if amount is None:
        return None
    currency = default_currency
    if isinstance(value, str):
        for sym, code in _CURRENCY_SYMBOLS.items():
            if sym in value:
                currency = code
                break
    return {"amount": max(amount, 0.0), "currency": currency}

def parse_iso_duration_minutes(value: str) -> Optional[int]:
    """'PT2H30M' -> 150. Returns None when the string is not ISO-8601."""
    m = _ISO_DURATION_RE.match((value or "").strip())
    if not m or not any(m.groups()):
        return None
    days, hours, minutes = (int(g) if g else 0 for g in m.groups())
    return days * 24 * 60 + hours * 60 + minutes

def parse_duration_hours(value: Any, minutes: bool = False) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = as_num(value)
        if f is None:
            return None
        return f / 60 if minutes else f
    if isinstance(value, dict):
        fixed = value.get("fixedDurationInMinutes") or value.get("minutes")
        return parse_duration_hours(fixed, minutes=True) if fixed is not None else None
    if not isinstance(value, str):
        return None

    s = value.strip().lower()
    iso = parse_iso_duration_minutes(s)
    if iso is not None:
        return iso / 60
    h = _HOURS_RE.search(s)
    m = _MINUTES_RE.search(s)
    rng = _RANGE_RE.search(s)
    if rng and not (h and m):
        mid = (float(rng.group(1)) + float(rng.group(2))) / 2
        in_minutes = minutes or (m is not None and h is None)
        return mid / 60 if in_minutes else mid
    if h or m:
        total = float(h.group(1)) if h else 0.0
        if m:
            total += float(m.group(1)) / 60
        return total
    d = _DAYS_RE.search(s)
    if d:
        return float(d.group(1)) * 24
    n = as_num(s)
    if n is None:
        return None
    return n / 60 if minutes else n

# ---------- keys ----------

def _canonical_key(key: str, variants: Mapping[str, str] = _KEY_VARIANTS) -> str:
    ck = to_camel(key) if "_" in key else key
    return variants.get(ck, ck)

def _is_variant(key: str, variants: Mapping[str, str] = _KEY_VARIANTS) -> bool:
    ck = to_camel(key) if "_" in key else key
    return ck in variants or ck != key

def _remap(obj: Mapping[str, Any], variants: Mapping[str, str]) -> Dict[str, Any]:
    """Canonical spellings win over variants; the first non-empty variant wins otherwise."""
    out: Dict[str, Any] = {}
    items = sorted(
        ((k, v) for k, v in obj.items() if isinstance(k, str)),
        key=lambda kv: _is_variant(kv[0], variants),
    )
    for key, value in items:
        ck = _canonical_key(key, variants)
        if ck in out and out[ck] not in (None, "", [], {}):
            continue
        out[ck] = value
    return out

def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None

def _image_url(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        return _str_or_none(item.get("url") or item.get("src"))
    return None

# ---------- sub-objects ----------

def _normalize_booking(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        return {"url": value.strip()}
    if not isinstance(value, dict):
        return None
    return _remap(value, _BOOKING_VARIANTS)

def _normalize_hours(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        s = value.strip()
        return {"weekday": s, "weekend": s} if s else None
    if not isinstance(value, dict):
        return None
    out = _remap(value, _HOURS_VARIANTS)
    for k in ("weekday", "weekend"):
        if k in out and not isinstance(out[k], str) and out[k] is not None:
            out[k] = str(out[k])
    return out

def _normalize_contact(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        return {"email": s} if "@" in s else {"phone": s}
    if not isinstance(value, dict):
        return None
    return _remap(value, _CONTACT_VARIANTS)

def _normalize_images(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        return {"main": value.strip(), "gallery": []}
    if isinstance(value, list):
        urls = [u for u in (_image_url(i) for i in value) if u]
        return {"main": urls[0] if urls else None, "gallery": urls}
    if not isinstance(value, dict):
        return None
    out = _remap(value, _IMAGE_VARIANTS)
    gallery = out.get("gallery")
    out["gallery"] = [u for u in (_image_url(i) for i in gallery or []) if u] if isinstance(gallery, list) else []
    if out.get("main") is not None:
        out["main"] = _image_url(out["main"])
    return out

def _as_list_of_str(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []

def _normalize_slot(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    if s in ("night", "late night"):
        return "evening"
    for slot in TIME_SLOTS:
        if s.startswith(slot):
            return slot
    return None

# ---------- activity ----------

def normalize_raw_activity(raw: Mapping[str, Any], default_currency: str = "USD") -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    data = _remap(raw, _KEY_VARIANTS)

    loc = data.get("location")
    if isinstance(loc, dict):
        data["location"] = _str_or_none(loc.get("name") or loc.get("address")) or ""
        if not data.get("address") and loc.get("address"):
            data["address"] = str(loc["address"])
    for key in ("name", "description", "location", "address", "referenceUrl", "commentary", "itineraryHighlight"):
        if data.get(key) is not None:
            data[key] = str(data[key]).strip()

    if "price" in data:
        price = parse_price(data["price"], default_currency)
        if price is None:
            data.pop("price")
        else:
            data["price"] = price

    minute_value = next((data.pop(k) for k in _MINUTE_KEYS if k in data), None)
    if minute_value is not None and data.get("duration") in (None, "", 0):
        hours = parse_duration_hours(minute_value, minutes=True)
    else:
        hours = parse_duration_hours(data.get("duration")) if "duration" in data else None
    if hours is None:
        data.pop("duration", None)
    else:
        data["duration"] = round(hours, 4)

    data["category"] = normalize_category(data.get("category"), data.get("name") or "", data.get("description") or "")

    if "dayNumber" in data:
        day = as_int(data["dayNumber"])
        if day is None or day < 1:
            data.pop("dayNumber")
        else:
            data["dayNumber"] = day

    if "timeSlot" in data:
        slot = _normalize_slot(data["timeSlot"])
        if slot is None:
            data.pop("timeSlot")
        else:
            data["timeSlot"] = slot

    if "tier" in data:
        tier = coerce_tier(data["tier"])
        if tier is None:
            data.pop("tier")
        else:
            data["tier"] = tier

    if "rating" in data:
        rating = data["rating"]
        if isinstance(rating, dict):
            rating = rating.get("combinedAverageRating", rating.get("average"))
        rating = as_num(rating)
        if rating is None:
            data.pop("rating")
        else:
            data["rating"] = rating

    if "reviews" in data and "numberOfReviews" not in data:
        data["numberOfReviews"] = data["reviews"]
    data.pop("reviews", None)
    if "numberOfReviews" in data:
        count = as_int(data["numberOfReviews"])
        if count is None:
            data.pop("numberOfReviews")
        else:
            data["numberOfReviews"] = count

    for key, fn in (("booking", _normalize_booking), ("operatingHours", _normalize_hours),
                    ("contact", _normalize_contact), ("images", _normalize_images)):
        if key in data and not isinstance(data[key], BaseModel):
            value = fn(data[key])
            if value is None:
                data.pop(key)
            else:
                data[key] = value

    top_level = next((data.pop(k) for k in _HIGHLIGHT_KEYS if k in data), None)
    if not isinstance(data.get("details"), BaseModel):
        details = data.get("details")
        details = _remap(details, {}) if isinstance(details, dict) else {}
        if not details.get("highlights") and top_level is not None:
            details["highlights"] = top_level
        if details or "details" in data:
            details["highlights"] = _as_list_of_str(details.get("highlights"))
            data["details"] = details

    if "selected" in data:
        sel = data["selected"]
        data["selected"] = sel.strip().lower() in {"true", "yes", "1"} if isinstance(sel, str) else bool(sel)

    return data

def assign_day_numbers(items: List[Dict[str, Any]], days: int) -> List[Dict[str, Any]]:
    """Spread activities with a missing or out-of-range day evenly across the trip."""
    if not items or days < 1:
        return items
    per_day = max(1, math.ceil(len(items) / days))
    out = []
    for i, item in enumerate(items):
        day = as_int(item.get("dayNumber"))
        if day is None or not 1 <= day <= days:
            item = {**item, "dayNumber": min(i // per_day + 1, days)}
        out.append(item)
    return out
