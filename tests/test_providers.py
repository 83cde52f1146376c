from __future__ import annotations

from datetime import datetime, timezone
import threading
from typing import Any

import pytest

from tripbrief.cache import OfferCache, RateLimiter
from tripbrief.contracts import Offer
from tripbrief.providers import FixtureProvider, ProviderError, ProviderGateway, SearchRequest


FIXED_NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class SlowAdapter:
    name = "slow"
    domains = frozenset({"hotels"})

    def __init__(self) -> None:
        self.release = threading.Event()

    def search(self, domain: str, params: dict[str, Any]) -> list[Offer]:
        self.release.wait(timeout=2)
        return []


class BrokenAdapter:
    domains = frozenset({"hotels"})

    def __init__(self, name: str, error: Exception) -> None:
        self.name = name
        self.error = error

    def search(self, domain: str, params: dict[str, Any]) -> list[Offer]:
        raise self.error


def _request(city: str = "Rome", domain: str = "hotels") -> SearchRequest:
    return SearchRequest(
        request_key=f"{domain}:{city.lower()}",
        domain=domain,
        city=city,
        params={"city": city, "check_in": "2027-03-01", "nights": 3, "adults": 2, "style": "mid-range"},
        slot_hashes={"destination": "h1"},
    )


def _gateway(adapters, **kwargs) -> ProviderGateway:  # type: ignore[no-untyped-def]
    return ProviderGateway(adapters, OfferCache(), clock=lambda: FIXED_NOW, **kwargs)


def test_fixture_provider_is_deterministic() -> None:
    provider = FixtureProvider()
    first = provider.search("hotels", {"city": "Rome", "adults": 2})
    second = provider.search("hotels", {"city": "Rome", "adults": 2})

    assert first == second
    assert len(first) == 12
    assert all(offer.city == "Rome" for offer in first)
    assert len(provider.calls) == 2


def test_fixture_provider_domains() -> None:
    provider = FixtureProvider()
    activities = provider.search("activities", {"city": "Rome"})
    restaurants = provider.search("restaurants", {"city": "Rome", "dietary": ["vegan"]})
    flights = provider.search("flights", {"origin": "London", "destination": "Rome"})

    assert len(activities) == 16
    assert any(offer.attributes["bookable"] for offer in activities)
    assert len(restaurants) == 10
    assert {offer.provider for offer in flights} == {"skyline", "aerocontinental", "bluejet"}
    assert provider.search("flights", {"origin": "Rome", "destination": "Naples"}) == []


def test_fixture_provider_unknown_city() -> None:
    with pytest.raises(ProviderError) as excinfo:
        FixtureProvider().search("hotels", {"city": "Atlantis"})
    assert excinfo.value.failure == "no_results"


def test_lookup_is_cached_by_fingerprint() -> None:
    provider = FixtureProvider()
    gateway = _gateway([provider])
    try:
        first = gateway.lookup(_request())
        second = gateway.lookup(_request())
    finally:
        gateway.close()

    assert first.from_cache is False
    assert second.from_cache is True
    assert len(provider.calls) == 1
    assert first.offer_set.offers == second.offer_set.offers
    scores = [offer.score for offer in first.offer_set.offers]
    assert scores == sorted(scores, reverse=True)


def test_slow_provider_times_out_without_failing_lookup() -> None:
    slow = SlowAdapter()
    fixture = FixtureProvider(domains=("hotels",))
    gateway = _gateway([slow, fixture], timeout_seconds=0.05)
    try:
        outcome = gateway.lookup(_request())
        again = gateway.lookup(_request())
    finally:
        slow.release.set()
        gateway.close()

    assert outcome.offer_set.failures == ["slow:timeout"]
    assert [condition.code for condition in outcome.conditions] == ["provider_timeout"]
    assert len(outcome.offer_set.offers) == 12
    assert again.from_cache is False


@pytest.mark.parametrize(
    ("error", "failure"),
    [
        (ProviderError("upstream_error", "502"), "upstream_error"),
        (ProviderError("rate_limited"), "rate_limited"),
        (RuntimeError("boom"), "upstream_error"),
    ],
)
def test_provider_errors_become_conditions(error: Exception, failure: str) -> None:
    gateway = _gateway([BrokenAdapter("broken", error), FixtureProvider(domains=("hotels",))])
    try:
        outcome = gateway.lookup(_request())
    finally:
        gateway.close()

    assert outcome.offer_set.failures == [f"broken:{failure}"]
    assert outcome.conditions[0].code == "provider_error"
    assert outcome.conditions[0].details["failure"] == failure
    assert outcome.offer_set.offers


def test_no_results_is_not_a_failure() -> None:
    gateway = _gateway([BrokenAdapter("empty", ProviderError("no_results"))])
    try:
        outcome = gateway.lookup(_request())
    finally:
        gateway.close()

    assert outcome.offer_set.failures == []
    assert outcome.conditions == []
    assert outcome.offer_set.offers == []


def test_rate_limited_adapter_is_skipped() -> None:
    clock = FakeClock()
    provider = FixtureProvider()
    gateway = _gateway([provider], rate_limiters={"fixture": RateLimiter(1.0, 1.0, clock=clock)})
    try:
        gateway.lookup(_request("Rome"))
        limited = gateway.lookup(_request("Florence"))
    finally:
        gateway.close()

    assert limited.offer_set.failures == ["fixture:rate_limited"]
    assert limited.conditions[0].details["failure"] == "rate_limited"
    assert len(provider.calls) == 1


def test_search_many_keeps_request_order() -> None:
    gateway = _gateway([FixtureProvider()])
    requests = [_request("Rome"), _request("Florence", "activities"), _request("Venice", "restaurants")]
    try:
        outcomes = gateway.search_many(requests)
    finally:
        gateway.close()

    assert [outcome.request.request_key for outcome in outcomes] == [
        "hotels:rome",
        "activities:florence",
        "restaurants:venice",
    ]
    assert all(outcome.offer_set.domain == outcome.request.domain for outcome in outcomes)
    assert gateway.search_many([]) == []
