"""Provider-adapter contract, an offline fixture provider and the concurrent lookup gateway."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from hashlib import sha256
import math
import random
import time
from typing import Any, Callable, Iterable, Literal, Protocol

from pydantic import BaseModel, Field

from tripbrief import telemetry
from tripbrief.cache import OfferCache, RateLimiter, make_fingerprint
from tripbrief.contracts import Offer, OfferSet, PlanCondition
from tripbrief.places import Place, PlaceCatalog, haversine_km


FailureCode = Literal["rate_limited", "no_results", "upstream_error", "timeout"]


class ProviderError(RuntimeError):
    """Typed provider failure. The gateway turns it into a condition, never a failed turn."""

    def __init__(self, failure: FailureCode, message: str = "", *, provider: str = "") -> None:
        super().__init__(message or failure)
        self.failure = failure
        self.provider = provider


class ProviderAdapter(Protocol):
    name: str
    domains: frozenset[str]

    def search(self, domain: str, params: dict[str, Any]) -> list[Offer]:
        ...


class SearchRequest(BaseModel):
    request_key: str
    domain: Literal["hotels", "activities", "restaurants", "flights"]
    city: str | None = None
    params: dict[str, Any]
    parallel_group: str | None = None
    slot_hashes: dict[str, str] = Field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return make_fingerprint(self.domain, self.params)


@dataclass
class LookupOutcome:
    request: SearchRequest
    offer_set: OfferSet
    from_cache: bool
    conditions: list[PlanCondition] = field(default_factory=list)


_STYLE_NIGHTLY: dict[str, int] = {"budget": 70, "mid-range": 130, "luxury": 280, "mixed": 120}
_STYLE_MEAL: dict[str, int] = {"budget": 14, "mid-range": 28, "luxury": 70, "mixed": 25}
_ACTIVITY_TEMPLATES: tuple[tuple[str, tuple[str, ...], int], ...] = (
    ("Old Town Walking Tour", ("culture", "history"), 18),
    ("City Museum", ("culture", "art"), 16),
    ("Food Market Tasting", ("food", "shopping"), 35),
    ("Cathedral Visit", ("history", "culture"), 10),
    ("Riverside Park Picnic", ("nature", "scenic"), 0),
    ("Rooftop Viewpoint", ("scenic", "romance"), 12),
    ("Cooking Class", ("food",), 65),
    ("Modern Art Gallery", ("art", "culture"), 14),
    ("Bike Tour", ("adventure", "scenic", "nature"), 30),
    ("Evening Jazz Bar", ("nightlife",), 20),
    ("Thermal Spa Session", ("wellness",), 40),
    ("Artisan Quarter Shopping", ("shopping",), 0),
    ("Castle Ruins Trail", ("history", "nature"), 8),
    ("Harbour Boat Ride", ("scenic", "beach"), 25),
    ("Family Science Centre", ("family", "culture"), 15),
    ("Wine Tasting Cellar", ("food", "romance"), 45),
)
_HOTEL_NAMES = ("Grand", "Central", "Plaza", "Garden", "Riverside", "Old Town", "Station", "Panorama")
_AIRLINES = ("skyline", "aerocontinental", "bluejet")


class FixtureProvider:
    """Deterministic offline offers synthesised around gazetteer coordinates.

    The same domain and params always yield the same offers, so demos and tests
    are reproducible without network access.
    """

    def __init__(
        self,
        name: str = "fixture",
        *,
        catalog: PlaceCatalog | None = None,
        domains: Iterable[str] = ("hotels", "activities", "restaurants", "flights"),
        latency_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.domains = frozenset(domains)
        self._catalog = catalog or PlaceCatalog()
        self._latency = latency_seconds
        self._sleep = sleep
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def search(self, domain: str, params: dict[str, Any]) -> list[Offer]:
        self.calls.append((domain, dict(params)))
        if self._latency:
            self._sleep(self._latency)
        if domain not in self.domains:
            raise ProviderError("no_results", f"{self.name} does not serve {domain}", provider=self.name)
        place = self._catalog.resolve(str(params.get("city", "")), params.get("country_code"))
        if place is None and domain != "flights":
            raise ProviderError("no_results", f"unknown city {params.get('city')!r}", provider=self.name)
        rng = random.Random(_seed(self.name, domain, params))
        if domain == "hotels":
            return self._hotels(place, params, rng)
        if domain == "activities":
            return self._activities(place, params, rng)
        if domain == "restaurants":
            return self._restaurants(place, params, rng)
        return self._flights(params, rng)

    def _hotels(self, place: Place, params: dict[str, Any], rng: random.Random) -> list[Offer]:
        style = str(params.get("style") or "mid-range")
        hint = params.get("max_price")
        base = float(hint) if hint else _STYLE_NIGHTLY.get(style, 120)
        rooms = max(1, math.ceil(int(params.get("adults") or 1) / 2))
        offers = []
        for index in range(12):
            distance = 0.3 + index * 0.7 + rng.uniform(0, 0.4)
            lat, lon = _offset(place, distance, rng.uniform(0, 2 * math.pi))
            # The three most central hotels are the value picks.
            central = index < 3
            factor = rng.uniform(0.55, 0.85) if central else rng.uniform(0.55, 1.6)
            price = Decimal(str(round(base * factor * (rooms if not hint else 1), 2)))
            rating = round(rng.uniform(3.6, 4.8) if central else rng.uniform(2.8, 4.9), 1)
            offers.append(
                Offer(
                    offer_id=f"{self.name}-hotel-{_slug(place.name)}-{index}",
                    domain="hotels",
                    provider=self.name,
                    name=f"Hotel {_HOTEL_NAMES[index % len(_HOTEL_NAMES)]} {place.name}",
                    city=place.name,
                    lat=lat,
                    lon=lon,
                    price=price,
                    rating=rating,
                    score=round(rating * 20, 1),
                    tags=[params.get("accommodation_type") or "hotel"],
                    attributes={"distance_from_center_km": round(distance, 2)},
                )
            )
        return offers

    def _activities(self, place: Place, params: dict[str, Any], rng: random.Random) -> list[Offer]:
        offers = []
        for index, (title, tags, price) in enumerate(_ACTIVITY_TEMPLATES):
            # Most sights sit near the centre; the last few are out of town.
            distance = rng.uniform(0.2, 5.0) if index < 13 else rng.uniform(9.0, 15.0)
            lat, lon = _offset(place, distance, rng.uniform(0, 2 * math.pi))
            rating = round(rng.uniform(3.6, 4.9), 1)
            boosted = set(tags) & set(place.highlights)
            offers.append(
                Offer(
                    offer_id=f"{self.name}-activity-{_slug(place.name)}-{index}",
                    domain="activities",
                    provider=self.name,
                    name=f"{place.name} {title}",
                    city=place.name,
                    lat=lat,
                    lon=lon,
                    price=Decimal(price) * int(params.get("adults") or 1),
                    rating=rating,
                    score=min(100.0, round(rating * 18 + 10 * len(boosted), 1)),
                    tags=list(tags),
                    attributes={"bookable": price >= 30, "duration_hours": 2 if price < 30 else 3},
                )
            )
        return offers

    def _restaurants(self, place: Place, params: dict[str, Any], rng: random.Random) -> list[Offer]:
        style = str(params.get("style") or "mid-range")
        base = _STYLE_MEAL.get(style, 25)
        dietary = list(params.get("dietary") or [])
        offers = []
        for index in range(10):
            lat, lon = _offset(place, rng.uniform(0.1, 4.0), rng.uniform(0, 2 * math.pi))
            rating = round(rng.uniform(3.4, 4.9), 1)
            offers.append(
                Offer(
                    offer_id=f"{self.name}-restaurant-{_slug(place.name)}-{index}",
                    domain="restaurants",
                    provider=self.name,
                    name=f"Trattoria {index + 1} {place.name}" if place.country_code == "it" else f"Bistro {index + 1} {place.name}",
                    city=place.name,
                    lat=lat,
                    lon=lon,
                    price=Decimal(str(round(base * rng.uniform(0.7, 1.4), 2))),
                    rating=rating,
                    score=round(rating * 20, 1),
                    tags=["food", *dietary[: index % (len(dietary) + 1)]],
                )
            )
        return offers

    def _flights(self, params: dict[str, Any], rng: random.Random) -> list[Offer]:
        origin = self._catalog.resolve(str(params.get("origin", "")))
        destination = self._catalog.resolve(str(params.get("destination", "")))
        if origin is None or destination is None:
            raise ProviderError("no_results", "unknown airport pair", provider=self.name)
        distance = haversine_km(origin.lat, origin.lon, destination.lat, destination.lon)
        if distance < 300:
            return []
        offers = []
        for index, airline in enumerate(_AIRLINES):
            price = Decimal(str(round((45 + distance * 0.07) * rng.uniform(0.8, 1.5), 2)))
            offers.append(
                Offer(
                    offer_id=f"{self.name}-flight-{_slug(origin.name)}-{_slug(destination.name)}-{index}",
                    domain="flights",
                    provider=airline,
                    name=f"{airline} {origin.name} to {destination.name}",
                    city=destination.name,
                    price=price,
                    score=round(rng.uniform(55, 90), 1),
                    attributes={"duration_minutes": int(distance / 750 * 60) + 25},
                )
            )
        return offers


class ProviderGateway:
    """Runs a turn's lookups concurrently through the shared offer cache.

    Each adapter call waits at most `timeout_seconds`; a slow or failing
    provider only removes its own offers and adds a condition.
    """

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter],
        cache: OfferCache,
        *,
        timeout_seconds: float = 4.0,
        rate_limiters: dict[str, RateLimiter] | None = None,
        max_workers: int = 8,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._adapters = list(adapters)
        self._cache = cache
        self._timeout = timeout_seconds
        self._limiters = rate_limiters or {}
        self._max_workers = max_workers
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._adapter_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider")

    def close(self) -> None:
        self._adapter_pool.shutdown(wait=False, cancel_futures=True)

    def search_many(self, requests: list[SearchRequest]) -> list[LookupOutcome]:
        """All lookups in parallel; results come back in request order."""
        if not requests:
            return []
        workers = min(self._max_workers, len(requests))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lookup") as pool:
            futures = [pool.submit(self.lookup, request) for request in requests]
            return [future.result() for future in futures]

    def lookup(self, request: SearchRequest) -> LookupOutcome:
        with telemetry.start_span("provider.lookup", {"tripbrief.domain": request.domain}) as span:
            conditions: list[PlanCondition] = []

            def fetch() -> OfferSet:
                offer_set, found = self._fetch(request)
                conditions.extend(found)
                return offer_set

            offer_set, from_cache = self._cache.get_or_fetch(
                request.fingerprint,
                fetch,
                slot_hashes=request.slot_hashes,
                cacheable=lambda result: not result.failures,
            )
            telemetry.set_attributes(span, from_cache=from_cache, conditions=len(conditions))
            return LookupOutcome(request=request, offer_set=offer_set, from_cache=from_cache, conditions=conditions)

    def _fetch(self, request: SearchRequest) -> tuple[OfferSet, list[PlanCondition]]:
        adapters = [adapter for adapter in self._adapters if request.domain in adapter.domains]
        offers: list[Offer] = []
        failures: list[str] = []
        conditions: list[PlanCondition] = []
        pending = []
        for adapter in adapters:
            limiter = self._limiters.get(adapter.name)
            if limiter is not None and not limiter.allow():
                failures.append(f"{adapter.name}:rate_limited")
                conditions.append(_provider_condition(adapter.name, request, "rate_limited"))
                continue
            pending.append((adapter, self._adapter_pool.submit(adapter.search, request.domain, dict(request.params))))

        deadline = time.monotonic() + self._timeout
        for adapter, future in pending:
            try:
                found = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                future.cancel()
                failures.append(f"{adapter.name}:timeout")
                conditions.append(_provider_condition(adapter.name, request, "timeout"))
                continue
            except ProviderError as exc:
                if exc.failure == "no_results":
                    continue
                failures.append(f"{adapter.name}:{exc.failure}")
                conditions.append(_provider_condition(adapter.name, request, exc.failure))
                continue
            except Exception as exc:  # adapter boundary: any crash is an upstream error
                failures.append(f"{adapter.name}:upstream_error")
                conditions.append(_provider_condition(adapter.name, request, "upstream_error", str(exc)))
                continue
            offers.extend(offer for offer in found if offer.domain == request.domain)

        offers.sort(key=lambda offer: (-offer.score, offer.price, offer.offer_id))
        offer_set = OfferSet(
            fingerprint=request.fingerprint,
            domain=request.domain,
            params=dict(request.params),
            offers=offers,
            fetched_at=self._clock(),
            failures=failures,
        )
        return offer_set, conditions


def _provider_condition(provider: str, request: SearchRequest, failure: str, detail: str = "") -> PlanCondition:
    code = "provider_timeout" if failure == "timeout" else "provider_error"
    where = f" for {request.city}" if request.city else ""
    return PlanCondition(
        code=code,
        message=f"{provider} {request.domain} lookup{where} failed ({failure}); its offers are left out this turn.",
        suggestion="Ask again later to include them.",
        details={"provider": provider, "domain": request.domain, "failure": failure, "detail": detail},
    )


def _seed(name: str, domain: str, params: dict[str, Any]) -> int:
    payload = f"{name}|{domain}|{params.get('city') or ''}|{params.get('origin') or ''}|{params.get('destination') or ''}"
    return int(sha256(payload.encode("utf-8")).hexdigest()[:12], 16)


def _offset(place: Place, distance_km: float, bearing: float) -> tuple[float, float]:
    d_lat = distance_km / 111.32 * math.cos(bearing)
    d_lon = distance_km / (111.32 * math.cos(math.radians(place.lat))) * math.sin(bearing)
    return round(place.lat + d_lat, 6), round(place.lon + d_lon, 6)


def _slug(value: str) -> str:
    return "-".join(value.lower().split())
