"""
Flight search against a mocked GDS: token refresh, throttling errors and tiering.
"""
from datetime import date

import httpx
import pytest

from errors import ProviderUnavailable, RateLimitExceeded
from models import PlanRequest
from services.gds import (
    FlightOffer,
    FlightSearch,
    FlightSearchService,
    GDSClient,
    format_duration,
    kayak_url,
    summarize_flight_tiers,
)
from services.rate_limiter import AdmissionQueue, Window
from services.retry import RetryPolicy

SEARCH = FlightSearch(origin="JFK", destination="CDG", departure_date=date(2025, 6, 1), return_date=date(2025, 6, 8))
CARRIERS = {"AF": "AIR FRANCE", "DL": "DELTA AIR LINES"}


def _offer(price, cabin="ECONOMY", carrier="AF", number="23", stops=0):
    segments = [{
        "carrierCode": carrier,
        "number": number,
        "departure": {"iataCode": "JFK", "at": "2025-06-01T18:30:00"},
        "arrival": {"iataCode": "CDG" if not stops else "AMS", "at": "2025-06-02T07:55:00"},
    }]
    if stops:
        segments.append({
            "carrierCode": carrier,
            "number": "1234",
            "departure": {"iataCode": "AMS", "at": "2025-06-02T09:00:00"},
            "arrival": {"iataCode": "CDG", "at": "2025-06-02T10:20:00"},
        })
    return {
        "itineraries": [
            {"duration": "PT7H25M", "segments": segments},
            {"duration": "PT8H40M", "segments": [{"carrierCode": carrier, "number": "22",
                                                  "departure": {"iataCode": "CDG", "at": "2025-06-08T10:15:00"},
                                                  "arrival": {"iataCode": "JFK", "at": "2025-06-08T12:55:00"}}]},
        ],
        "price": {"grandTotal": str(price), "currency": "USD"},
        "travelerPricings": [{"fareDetailsBySegment": [{"cabin": cabin}]}],
    }


class FakeGDS:
    """Handler for httpx.MockTransport that records every request."""

    def __init__(self, offers_by_cabin=None, statuses=None, failing_cabins=()):
        self.offers_by_cabin = offers_by_cabin or {}
        self.statuses = list(statuses or [])
        self.failing_cabins = set(failing_cabins)
        self.tokens_issued = 0
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/v1/security/oauth2/token":
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"tok{self.tokens_issued}", "expires_in": 1799})
        if self.statuses:
            return httpx.Response(self.statuses.pop(0), json={"errors": []})
        cabin = request.url.params["travelClass"]
        if cabin in self.failing_cabins:
            return httpx.Response(500, json={"errors": []})
        return httpx.Response(200, json={
            "data": self.offers_by_cabin.get(cabin, []),
            "dictionaries": {"carriers": CARRIERS},
        })

    def offer_requests(self):
        return [r for r in self.requests if r.url.path == "/v2/shopping/flight-offers"]


def _client(fake, attempts=2):
    return GDSClient(
        client_id="id",
        client_secret="secret",
        admission=AdmissionQueue([Window(100, 1.0)]),
        retry=RetryPolicy(max_attempts=attempts, base_delay_s=0, jitter_s=0),
        transport=httpx.MockTransport(fake),
    )


class TestParsing:

    def test_offer_from_api(self):
        offer = FlightOffer.from_api(_offer(612.40, stops=1), CARRIERS, "ECONOMY")

        assert offer.airline == "AIR FRANCE"
        assert offer.flight_number == "AF23"
        assert offer.route == "JFK-CDG"
        assert offer.layovers == 1
        assert offer.duration == "7h 25m"
        assert offer.inbound == "2025-06-08T10:15:00"
        assert offer.tier == "medium"

    def test_offer_without_segments_is_skipped(self):
        assert FlightOffer.from_api({"itineraries": [], "price": {"total": "10"}}, {}, "ECONOMY") is None

    def test_search_params_and_links(self):
        params = SEARCH.params("BUSINESS")

        assert params["travelClass"] == "BUSINESS"
        assert params["returnDate"] == "2025-06-08"
        assert kayak_url(SEARCH) == "https://www.kayak.com/flights/JFK-CDG/2025-06-01/2025-06-08"
        assert format_duration("PT11H5M") == "11h 5m"
        assert format_duration(None) == ""

    def test_search_requires_codes_and_date(self):
        with pytest.raises(ValueError):
            FlightSearch.from_request(PlanRequest(destination="Paris", days=3, origin_code="JFK"))


class TestSummaries:

    def test_tiers_group_by_cabin_then_price(self):
        offers = [
            FlightOffer.from_api(_offer(420), CARRIERS, "ECONOMY"),
            FlightOffer.from_api(_offer(380, carrier="DL"), CARRIERS, "ECONOMY"),
            FlightOffer.from_api(_offer(1300, cabin="BUSINESS"), CARRIERS, "BUSINESS"),
            FlightOffer.from_api(_offer(900, cabin="FIRST"), CARRIERS, "FIRST"),
        ]

        tiers = summarize_flight_tiers(offers, "https://www.kayak.com/flights/JFK-CDG/2025-06-01")

        assert (tiers.budget.min, tiers.budget.max, tiers.budget.average) == (380, 420, 400)
        assert tiers.budget.source == "Amadeus"
        assert tiers.budget.references[0]["airline"] == "DELTA AIR LINES"
        assert tiers.medium.references[0]["cabin"] == "BUSINESS"
        assert tiers.premium.references[0]["flightNumber"] == "AF23"
        assert tiers.premium.references[0]["url"].startswith("https://www.kayak.com/")

    def test_empty_tier_gets_default(self):
        tiers = summarize_flight_tiers([])
        assert tiers.medium.source == "Default due to API error"
        assert tiers.medium.confidence == 0


class TestGDSClient:

    @pytest.mark.asyncio
    async def test_token_is_reused_between_searches(self):
        fake = FakeGDS({"ECONOMY": [_offer(420)]})
        client = _client(fake)
        try:
            await client.search_offers(SEARCH, "ECONOMY")
            offers = await client.search_offers(SEARCH, "ECONOMY")
        finally:
            await client.aclose()

        assert fake.tokens_issued == 1
        assert offers[0].price == 420
        assert fake.offer_requests()[0].headers["Authorization"] == "Bearer tok1"

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once(self):
        fake = FakeGDS({"ECONOMY": [_offer(420)]}, statuses=[401])
        client = _client(fake)
        try:
            offers = await client.search_offers(SEARCH, "ECONOMY")
        finally:
            await client.aclose()

        assert len(offers) == 1
        assert fake.tokens_issued == 2
        assert [r.headers["Authorization"] for r in fake.offer_requests()] == ["Bearer tok1", "Bearer tok2"]

    @pytest.mark.asyncio
    async def test_throttling_after_retries_is_rate_limit_exceeded(self):
        fake = FakeGDS(statuses=[429, 429])
        client = _client(fake, attempts=2)
        try:
            with pytest.raises(RateLimitExceeded):
                await client.search_offers(SEARCH, "ECONOMY")
        finally:
            await client.aclose()

        assert len(fake.offer_requests()) == 2

    @pytest.mark.asyncio
    async def test_server_errors_after_retries_are_provider_unavailable(self):
        fake = FakeGDS(statuses=[500, 502, 503])
        client = _client(fake, attempts=3)
        try:
            with pytest.raises(ProviderUnavailable):
                await client.search_offers(SEARCH, "ECONOMY")
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self):
        fake = FakeGDS({"ECONOMY": [_offer(420)]}, statuses=[503])
        client = _client(fake, attempts=2)
        try:
            offers = await client.search_offers(SEARCH, "ECONOMY")
        finally:
            await client.aclose()

        assert len(offers) == 1
        assert client.admission.admitted == 2

    @pytest.mark.asyncio
    async def test_one_failing_cabin_does_not_sink_the_search(self):
        fake = FakeGDS({"ECONOMY": [_offer(420)], "FIRST": [_offer(2500, cabin="FIRST")]}, failing_cabins={"BUSINESS"})
        client = _client(fake, attempts=1)
        try:
            offers = await client.search_all_cabins(SEARCH)
        finally:
            await client.aclose()

        assert sorted(o.cabin for o in offers) == ["ECONOMY", "FIRST"]

    @pytest.mark.asyncio
    async def test_every_cabin_failing_raises(self):
        fake = FakeGDS(statuses=[500] * 4)
        client = _client(fake, attempts=1)
        try:
            with pytest.raises(ProviderUnavailable):
                await client.search_all_cabins(SEARCH)
        finally:
            await client.aclose()


class TestFlightSearchService:

    @pytest.mark.asyncio
    async def test_tiers_for_request(self):
        fake = FakeGDS({"ECONOMY": [_offer(420), _offer(760)], "BUSINESS": [_offer(2100, cabin="BUSINESS")]})
        service = FlightSearchService(_client(fake))
        req = PlanRequest(destination="Paris", start_date="2025-06-01", end_date="2025-06-03",
                          origin_code="jfk", destination_code="cdg", travelers=2)
        try:
            tiers = await service.tiers_for(req)
        finally:
            await service.aclose()

        assert tiers.budget.min == 420
        assert tiers.medium.min == 760
        assert tiers.premium.min == 2100
        assert tiers.search_url == "https://www.kayak.com/flights/JFK-CDG/2025-06-01/2025-06-03"
        assert fake.offer_requests()[0].url.params["adults"] == "2"
