"""
Tours marketplace enrichment (Viator partner API).

An LLM-proposed activity is matched to a marketplace product either by its
product code or by title similarity. A match backfills verified facts
(rating, reviews, images, booking details); a miss keeps the activity with
generic booking placeholders and a pending verification status.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from config import settings
from errors import EnrichmentMiss, PlannerError
from request_context import get_request_id
from services.normalizer import as_int, as_num
from services.retry import RetryPolicy
from services.text_similarity import combined_similarity, word_set_jaccard

log = logging.getLogger("marketplace")

PRODUCT_CODE_RE = re.compile(r"-([a-zA-Z0-9]+)(?:\?|$)")
PREFERRED_IMAGE_SIZE = (480, 320)
MIN_SEARCH_RATING = 3.5

PLACEHOLDER_BOOKING: Dict[str, Any] = {
    "cancellationPolicy": "Standard cancellation policy",
    "instantConfirmation": True,
    "mobileTicket": True,
    "languages": ["English"],
    "minParticipants": 1,
    "maxParticipants": 999,
}


def _pick_image(image: Mapping[str, Any]) -> Optional[str]:
    variants = [v for v in image.get("variants") or [] if isinstance(v, dict) and v.get("url")]
    if not variants:
        return None
    for v in variants:
        if (v.get("width"), v.get("height")) == PREFERRED_IMAGE_SIZE:
            return v["url"]
    return variants[0]["url"]


@dataclass(frozen=True)
class MarketplaceProduct:
    product_code: str
    title: str
    description: str = ""
    rating: float = 0.0
    review_count: int = 0
    price: Optional[float] = None
    currency: str = "USD"
    duration_minutes: Optional[int] = None
    images: Tuple[str, ...] = ()
    product_url: Optional[str] = None
    cancellation_policy: Optional[str] = None

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "MarketplaceProduct":
        reviews = item.get("reviews") or {}
        pricing = item.get("pricing") or {}
        duration = item.get("duration") or {}
        cancellation = item.get("cancellationPolicy")
        if isinstance(cancellation, dict):
            cancellation = cancellation.get("description")
        images = tuple(u for u in (_pick_image(i) for i in item.get("images") or [] if isinstance(i, dict)) if u)
        return cls(
            product_code=str(item.get("productCode") or ""),
            title=str(item.get("title") or ""),
            description=str(item.get("description") or ""),
            rating=as_num(reviews.get("combinedAverageRating")) or 0.0,
            review_count=as_int(reviews.get("totalReviews")) or 0,
            price=as_num((pricing.get("summary") or {}).get("fromPrice")),
            currency=str(pricing.get("currency") or "USD"),
            duration_minutes=as_int(duration.get("fixedDurationInMinutes")),
            images=images,
            product_url=item.get("productUrl"),
            cancellation_policy=cancellation or None,
        )

    def relevance(self, title: str) -> float:
        """Search-result ordering: title overlap first, then rating and popularity."""
        return (0.6 * word_set_jaccard(title, self.title)
                + 0.3 * (self.rating / 5.0)
                + 0.1 * min(self.review_count / 1000.0, 1.0))


def product_code_for(activity: Mapping[str, Any]) -> Optional[str]:
    booking = activity.get("booking") or {}
    code = booking.get("productCode") if isinstance(booking, dict) else None
    if code:
        return str(code)
    url = activity.get("referenceUrl")
    if isinstance(url, str) and "viator.com" in url:
        m = PRODUCT_CODE_RE.search(url)
        if m:
            return m.group(1)
    return None


def apply_placeholders(activity: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(activity)
    booking = dict(out.get("booking") or {})
    for k, v in PLACEHOLDER_BOOKING.items():
        if booking.get(k) in (None, "", []):
            booking[k] = list(v) if isinstance(v, list) else v
    out["booking"] = booking
    out.setdefault("isVerified", False)
    out["verificationStatus"] = out.get("verificationStatus") or "pending"
    return out


def merge_product(activity: Mapping[str, Any], product: MarketplaceProduct) -> Dict[str, Any]:
    """Backfill verified marketplace facts; LLM-supplied values are kept where present."""
    out = apply_placeholders(activity)
    if not as_num(out.get("rating")) and product.rating:
        out["rating"] = product.rating
    if not as_int(out.get("numberOfReviews")) and product.review_count:
        out["numberOfReviews"] = product.review_count

    images = dict(out.get("images") or {})
    if product.images:
        if not images.get("main"):
            images["main"] = product.images[0]
        if not images.get("gallery"):
            images["gallery"] = list(product.images)
        out["images"] = images

    booking = dict(out["booking"])
    booking["productCode"] = product.product_code
    booking.setdefault("provider", "Viator")
    if product.product_url and not booking.get("url"):
        booking["url"] = product.product_url
    if product.cancellation_policy:
        booking["cancellationPolicy"] = product.cancellation_policy
    out["booking"] = booking

    if not out.get("referenceUrl"):
        out["referenceUrl"] = product.product_url or f"https://www.viator.com/tours/{product.product_code}"
    out["isVerified"] = True
    out["verificationStatus"] = "verified"
    return out


class MarketplaceClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.viator.com/partner",
        timeout_s: float = 30.0,
        min_interval_s: float = 1.0,
        match_threshold: float = 0.6,
        retry: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.match_threshold = match_threshold
        self.min_interval_s = min_interval_s
        self.retry = retry or RetryPolicy()
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_s,
            transport=transport,
            headers={
                "Accept": "application/json;version=2.0",
                "Accept-Language": "en-US",
                "exp-api-key": api_key,
            },
        )
        self._lock = asyncio.Lock()
        self._last_request = 0.0

    @classmethod
    def from_settings(cls) -> "MarketplaceClient":
        return cls(
            api_key=settings.VIATOR_API_KEY,
            base_url=settings.VIATOR_BASE_URL,
            min_interval_s=settings.VIATOR_MIN_INTERVAL_S,
            match_threshold=settings.ENRICHMENT_MATCH_THRESHOLD,
            retry=RetryPolicy.from_settings(),
        )

    async def _throttle(self) -> None:
        async with self._lock:
            wait = self.min_interval_s - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        async def op():
            await self._throttle()
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        return await self.retry.run(op, label=f"marketplace {path}")

    async def get_product(self, code: str) -> Optional[MarketplaceProduct]:
        try:
            data = await self._request("GET", f"/products/{code}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return MarketplaceProduct.from_api(data) if isinstance(data, dict) else None

    async def search(self, term: str, limit: int = 20) -> List[MarketplaceProduct]:
        body = {
            "searchTerm": term,
            "searchTypes": [{"searchType": "PRODUCTS", "pagination": {"offset": 0, "limit": limit}}],
            "currency": "USD",
            "productFiltering": {"rating": {"minimum": MIN_SEARCH_RATING}},
            "productSorting": {"sortBy": "POPULARITY", "sortOrder": "DESC"},
        }
        data = await self._request("POST", "/search/freetext", json=body)
        results = ((data or {}).get("products") or {}).get("results") or []
        return [MarketplaceProduct.from_api(r) for r in results if isinstance(r, dict)]

    async def find_match(self, activity: Mapping[str, Any]) -> MarketplaceProduct:
        name = str(activity.get("name") or "")
        code = product_code_for(activity)
        if code:
            product = await self.get_product(code)
            if product:
                return product

        results = await self.search(name)
        if code:
            for p in results:
                if p.product_code == code:
                    return p
        if not results:
            raise EnrichmentMiss(f"no marketplace results for {name!r}")

        best = max(results, key=lambda p: p.relevance(name))
        similarity = combined_similarity(name, best.title)
        if similarity < self.match_threshold:
            raise EnrichmentMiss(f"best match {best.title!r} scored {similarity:.2f}")
        return best

    async def enrich(self, activity: Mapping[str, Any]) -> Dict[str, Any]:
        """Never raises: misses and provider errors keep the activity with placeholders."""
        rid = get_request_id()
        name = activity.get("name")
        try:
            product = await self.find_match(activity)
        except EnrichmentMiss as e:
            log.info("Enrichment miss", extra={"request_id": rid, "activity": name, "reason": str(e)})
            return apply_placeholders(activity)
        except (httpx.HTTPError, PlannerError, ValueError) as e:
            log.warning("Enrichment failed; keeping activity unverified", extra={
                "request_id": rid, "activity": name, "error": e.__class__.__name__,
            })
            return apply_placeholders(activity)

        log.info("Enrichment hit", extra={"request_id": rid, "activity": name, "product_code": product.product_code})
        return merge_product(activity, product)

    async def aclose(self) -> None:
        await self._client.aclose()
