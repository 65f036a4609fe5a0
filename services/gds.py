"""
Flight search against the Amadeus self-service GDS.

Every outbound request (token included) passes the shared admission queue
and the retry policy. Exhausted retries surface as RateLimitExceeded (429)
or ProviderUnavailable (5xx) so the planner can report the branch as failed.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

import httpx

from config import settings
from errors import PlannerError, ProviderUnavailable, RateLimitExceeded
from models import FlightTiers, PlanRequest, TierSummary
from request_context import get_request_id
from services.normalizer import as_num, parse_iso_duration_minutes
from services.rate_limiter import AdmissionQueue
from services.retry import RetryPolicy
from services.tiers import TIERS, classify_travel_offer

log = logging.getLogger("gds")

CABIN_CLASSES = ("ECONOMY", "PREMIUM_ECONOMY", "BUSINESS", "FIRST")
TOKEN_REFRESH_MARGIN_S = 30.0
MAX_REFERENCES = 5


@dataclass(frozen=True)
class FlightSearch:
    origin: str
    destination: str
    departure_date: date
    return_date: Optional[date] = None
    adults: int = 1
    currency: str = "USD"
    max_results: int = 10

    @classmethod
    def from_request(cls, req: PlanRequest) -> "FlightSearch":
        if not (req.origin_code and req.destination_code and req.start_date):
            raise ValueError("flight search needs origin_code, destination_code and start_date")
        return cls(
            origin=req.origin_code,
            destination=req.destination_code,
            departure_date=req.start_date,
            return_date=req.end_date,
            adults=req.travelers,
            currency=req.currency,
        )

    def params(self, cabin: str) -> Dict[str, str]:
        p = {
            "originLocationCode": self.origin,
            "destinationLocationCode": self.destination,
            "departureDate": self.departure_date.isoformat(),
            "adults": str(self.adults),
            "travelClass": cabin,
            "currencyCode": self.currency,
            "max": str(self.max_results),
        }
        if self.return_date:
            p["returnDate"] = self.return_date.isoformat()
        return p


def kayak_url(search: FlightSearch) -> str:
    url = f"https://www.kayak.com/flights/{search.origin}-{search.destination}/{search.departure_date.isoformat()}"
    if search.return_date:
        url += f"/{search.return_date.isoformat()}"
    return url


def format_duration(iso: Optional[str]) -> str:
    minutes = parse_iso_duration_minutes(iso) if iso else None
    if minutes is None:
        return ""
    return f"{minutes // 60}h {minutes % 60}m"


@dataclass(frozen=True)
class FlightOffer:
    airline: str
    flight_number: str
    price: float
    currency: str
    cabin: str
    route: str
    outbound: str
    inbound: Optional[str]
    duration: str
    layovers: int

    @property
    def tier(self) -> str:
        return classify_travel_offer(self.price, self.cabin)

    @classmethod
    def from_api(cls, offer: Mapping[str, Any], carriers: Mapping[str, str], cabin: str) -> Optional["FlightOffer"]:
        itineraries = offer.get("itineraries") or []
        if not itineraries or not itineraries[0].get("segments"):
            return None
        segments = itineraries[0]["segments"]
        first, last = segments[0], segments[-1]
        price_info = offer.get("price") or {}
        price = as_num(price_info.get("grandTotal") or price_info.get("total"))
        if price is None:
            return None
        try:
            cabin = offer["travelerPricings"][0]["fareDetailsBySegment"][0]["cabin"] or cabin
        except (KeyError, IndexError, TypeError):
            pass
        inbound = None
        if len(itineraries) > 1 and itineraries[1].get("segments"):
            inbound = itineraries[1]["segments"][0].get("departure", {}).get("at")
        code = str(first.get("carrierCode") or "")
        return cls(
            airline=carriers.get(code, code),
            flight_number=f"{code}{first.get('number', '')}",
            price=price,
            currency=str(price_info.get("currency") or "USD"),
            cabin=str(cabin).upper(),
            route=f"{first.get('departure', {}).get('iataCode', '')}-{last.get('arrival', {}).get('iataCode', '')}",
            outbound=str(first.get("departure", {}).get("at", "")),
            inbound=inbound,
            duration=format_duration(itineraries[0].get("duration")),
            layovers=len(segments) - 1,
        )

    def as_reference(self, search_url: str) -> Dict[str, Any]:
        return {
            "airline": self.airline,
            "route": self.route,
            "price": self.price,
            "currency": self.currency,
            "cabin": self.cabin,
            "outbound": self.outbound,
            "inbound": self.inbound,
            "duration": self.duration,
            "layovers": self.layovers,
            "flightNumber": self.flight_number,
            "tier": self.tier,
            "url": search_url,
        }


class GDSClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://test.api.amadeus.com",
        admission: Optional[AdmissionQueue] = None,
        retry: Optional[RetryPolicy] = None,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.admission = admission or AdmissionQueue.from_settings()
        self.retry = retry or RetryPolicy()
        self._http = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout_s, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, admission: Optional[AdmissionQueue] = None) -> "GDSClient":
        return cls(
            client_id=settings.AMADEUS_CLIENT_ID,
            client_secret=settings.AMADEUS_CLIENT_SECRET,
            base_url=settings.AMADEUS_BASE_URL,
            admission=admission,
            retry=RetryPolicy.from_settings(),
        )

    async def _access_token(self, force: bool = False) -> str:
        if not force and self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = await self._http.post(
            "/v1/security/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        resp.raise_for_status()
        body = resp.json()
        token = body.get("access_token")
        if not token:
            raise ProviderUnavailable("No access token received from the GDS")
        self._token = token
        self._token_expires_at = time.monotonic() + float(body.get("expires_in") or 0) - TOKEN_REFRESH_MARGIN_S
        log.info("GDS token refreshed", extra={"request_id": get_request_id()})
        return token

    async def _get(self, path: str, params: Mapping[str, str]) -> Dict[str, Any]:
        async def op():
            async with self.admission.slot():
                token = await self._access_token()
                resp = await self._http.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
                if resp.status_code == 401:
                    token = await self._access_token(force=True)
                    resp = await self._http.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
                resp.raise_for_status()
                return resp.json()

        try:
            return await self.retry.run(op, label=f"gds {path}")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise RateLimitExceeded("GDS rate limit exceeded after retries", status=status) from e
            if status >= 500:
                raise ProviderUnavailable(f"GDS returned {status} after retries", status=status) from e
            raise

    async def search_offers(self, search: FlightSearch, cabin: str) -> List[FlightOffer]:
        data = await self._get("/v2/shopping/flight-offers", search.params(cabin))
        carriers = ((data.get("dictionaries") or {}).get("carriers")) or {}
        offers = []
        for raw in data.get("data") or []:
            offer = FlightOffer.from_api(raw, carriers, cabin)
            if offer:
                offers.append(offer)
        return offers

    async def search_all_cabins(self, search: FlightSearch) -> List[FlightOffer]:
        """Cabins are searched in sequence; one failing cabin does not sink the others."""
        rid = get_request_id()
        offers: List[FlightOffer] = []
        last_error: Optional[Exception] = None
        for cabin in CABIN_CLASSES:
            try:
                found = await self.search_offers(search, cabin)
            except (PlannerError, httpx.HTTPError) as e:
                last_error = e
                log.warning("Cabin search failed", extra={"request_id": rid, "cabin": cabin, "error": e.__class__.__name__})
                continue
            log.info("Cabin search ok", extra={"request_id": rid, "cabin": cabin, "offers": len(found)})
            offers.extend(found)
        if not offers and last_error is not None:
            raise last_error
        return offers

    async def aclose(self) -> None:
        await self._http.aclose()


def _default_summary() -> TierSummary:
    return TierSummary(source="Default due to API error")


def summarize_flight_tiers(offers: List[FlightOffer], search_url: Optional[str] = None) -> FlightTiers:
    grouped: Dict[str, List[FlightOffer]] = defaultdict(list)
    for o in offers:
        grouped[o.tier].append(o)

    out: Dict[str, TierSummary] = {}
    for tier in TIERS:
        group = sorted(grouped.get(tier, []), key=lambda o: o.price)
        if not group:
            out[tier] = _default_summary()
            continue
        prices = [o.price for o in group]
        out[tier] = TierSummary(
            min=min(prices),
            max=max(prices),
            average=round(sum(prices) / len(prices), 2),
            confidence=0.9,
            source="Amadeus",
            references=[o.as_reference(search_url or "") for o in group[:MAX_REFERENCES]],
        )
    return FlightTiers(search_url=search_url, **out)


class FlightSearchService:
    def __init__(self, gds: GDSClient):
        self.gds = gds

    async def tiers_for(self, req: PlanRequest) -> FlightTiers:
        search = FlightSearch.from_request(req)
        offers = await self.gds.search_all_cabins(search)
        return summarize_flight_tiers(offers, kayak_url(search))

    async def aclose(self) -> None:
        await self.gds.aclose()
