"""Deterministic search planner: one lookup per domain and city for a planning pass."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable

from tripbrief.brief import slot_hashes, slot_value
from tripbrief.contracts import DateRangeValue, OriginValue, PreferencesValue, TravelersValue, TripBrief
from tripbrief.places import Place, PlaceCatalog
from tripbrief.providers import SearchRequest
from tripbrief.state_machine import SLOT_DEPENDENCIES


CITY_DOMAINS: tuple[str, ...] = ("hotels", "activities", "restaurants")


def domain_slots(domain: str) -> list[str]:
    """Slots whose values a lookup in `domain` is built from."""
    return [slot for slot, domains in SLOT_DEPENDENCIES.items() if domain in domains]


class SearchPlanner:
    """Build the request set for a locked brief.

    City lookups for the same city share a parallel group; the flight lookup
    sits in its own group. The gateway fires every group at once.
    """

    def __init__(self, catalog: PlaceCatalog | None = None) -> None:
        self._catalog = catalog or PlaceCatalog()

    def generate(
        self,
        brief: TripBrief,
        *,
        cities: list[Place],
        nights: dict[str, int],
        ceilings: dict[str, Decimal] | None = None,
        domains: Iterable[str] | None = None,
    ) -> list[SearchRequest]:
        wanted = set(domains) if domains is not None else {*CITY_DOMAINS, "flights"}
        dates: DateRangeValue | None = slot_value(brief, "date_range")
        travelers: TravelersValue | None = slot_value(brief, "travelers")
        preferences: PreferencesValue | None = slot_value(brief, "preferences")
        style = slot_value(brief, "style")
        adults = travelers.adults if travelers else 1
        children = travelers.children if travelers else 0
        ceilings = ceilings or {}

        requests: list[SearchRequest] = []
        check_in = dates.start if dates else None
        for idx, city in enumerate(cities):
            group = f"city_{idx}_offers"
            base = {"city": city.name, "country_code": city.country_code}
            per_domain: dict[str, dict[str, Any]] = {
                "hotels": {
                    **base,
                    "check_in": _iso(check_in),
                    "nights": nights.get(city.name, 1),
                    "adults": adults,
                    "children": children,
                    "style": style,
                    "max_price": str(ceilings[city.name]) if city.name in ceilings else None,
                    "accommodation_type": preferences.accommodation_type if preferences else None,
                },
                "activities": {
                    **base,
                    "start": _iso(check_in),
                    "nights": nights.get(city.name, 1),
                    "interests": list(preferences.interests) if preferences else [],
                    "adults": adults,
                    "children": children,
                },
                "restaurants": {
                    **base,
                    "style": style,
                    "dietary": list(preferences.dietary) if preferences else [],
                },
            }
            for domain in CITY_DOMAINS:
                if domain not in wanted:
                    continue
                requests.append(
                    SearchRequest(
                        request_key=f"{domain}:{_slug(city.name)}",
                        domain=domain,
                        city=city.name,
                        params=per_domain[domain],
                        parallel_group=group,
                        slot_hashes=slot_hashes(brief, domain_slots(domain)),
                    )
                )
            if check_in is not None:
                check_in = check_in + timedelta(days=nights.get(city.name, 1))

        flight = self._flight_request(brief, cities, dates, adults + children) if "flights" in wanted else None
        if flight is not None:
            requests.append(flight)
        return requests

    def _flight_request(
        self,
        brief: TripBrief,
        cities: list[Place],
        dates: DateRangeValue | None,
        party: int,
    ) -> SearchRequest | None:
        origin: OriginValue | None = slot_value(brief, "origin")
        if origin is None or not cities or brief.slot("origin").locked_at is None:
            return None
        home = self._catalog.resolve(origin.name, origin.country_code)
        if home is None or home.name == cities[0].name:
            return None
        return SearchRequest(
            request_key=f"flights:{_slug(home.name)}-{_slug(cities[0].name)}",
            domain="flights",
            city=cities[0].name,
            params={
                "origin": home.name,
                "destination": cities[0].name,
                "depart": _iso(dates.start if dates else None),
                "passengers": party,
            },
            parallel_group="transfers",
            slot_hashes=slot_hashes(brief, domain_slots("flights")),
        )


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _slug(value: str) -> str:
    return "-".join(value.lower().split())
