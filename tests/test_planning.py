from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterator

import pytest

from tripbrief.brief import new_brief, slot_hashes
from tripbrief.cache import OfferCache
from tripbrief.contracts import (
    BudgetValue,
    DateRangeValue,
    DestinationValue,
    OriginValue,
    TravelersValue,
    TripBrief,
)
from tripbrief.persistence import InMemoryTripStore
from tripbrief.planning import PlanningPass
from tripbrief.providers import FixtureProvider, ProviderGateway


FIXED_NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


def _brief(**overrides: Any) -> TripBrief:
    brief = new_brief("trip-1", now=FIXED_NOW)
    values = {
        "destination": DestinationValue(type="country", primary="Italy", country_code="it"),
        "date_range": DateRangeValue(start=date(2027, 3, 1), end=date(2027, 3, 7)),
        "travelers": TravelersValue(adults=1),
        "budget": BudgetValue(amount=Decimal("2000"), currency="GBP"),
        "style": "mid-range",
        **overrides,
    }
    for name, value in values.items():
        constraint = brief.slot(name)
        constraint.value = value
        constraint.status = "confirmed"
        constraint.locked_at = FIXED_NOW
    brief.phase = "ready_to_plan"
    return brief


class Harness:
    def __init__(self, provider: FixtureProvider) -> None:
        self.provider = provider
        self.store = InMemoryTripStore(clock=lambda: FIXED_NOW)
        self.gateway = ProviderGateway([provider], OfferCache(), clock=lambda: FIXED_NOW)
        self.planner = PlanningPass(self.store, self.gateway, clock=lambda: FIXED_NOW)


@pytest.fixture
def harness() -> Iterator[Harness]:
    h = Harness(FixtureProvider())
    yield h
    h.gateway.close()


def test_single_city_week_in_italy(harness: Harness) -> None:
    brief = _brief()
    before = brief.model_dump(mode="json")

    plan = harness.planner.run(brief)

    assert brief.model_dump(mode="json") == before
    assert plan.status == "proposed"
    assert plan.based_on == slot_hashes(brief)
    assert plan.sequence == ["Rome"]
    assert plan.nights == {"Rome": 7}
    assert plan.currency == "GBP"
    assert plan.budget["accommodation"] == "1100.00"
    assert plan.budget["per_night_ceiling"] == "157.14"
    assert plan.relaxation_steps == []
    assert plan.transfers == []
    assert [day.day_type for day in plan.days] == ["arrival", "full", "full", "full", "full", "full", "departure"]
    assert plan.accommodations["Rome"].price <= Decimal("157.14")
    assert plan.searches == ["hotels:rome", "activities:rome", "restaurants:rome"]
    assert plan.conditions == []
    assert plan.totals["accommodation"] == plan.accommodations["Rome"].price * 7
    assert plan.checklist[0].category == "accommodation"
    assert len(harness.store.search_records("trip-1")) == 3
    assert all(record.offer_count for record in harness.store.search_records("trip-1"))


def test_second_run_is_served_from_cache(harness: Harness) -> None:
    harness.planner.run(_brief())
    calls = len(harness.provider.calls)

    plan = harness.planner.run(_brief())

    assert len(harness.provider.calls) == calls
    assert plan.status == "proposed"


def test_longer_trip_visits_two_cities(harness: Harness) -> None:
    plan = harness.planner.run(_brief(date_range=DateRangeValue(start=date(2027, 3, 1), duration=9)))

    assert set(plan.sequence) == {"Rome", "Florence"}
    assert sum(plan.nights.values()) == 9
    assert len(plan.transfers) == 1
    leg = plan.transfers[0]
    assert leg.backup is not None or leg.single_route_risk
    assert [day.day_type for day in plan.days].count("travel") == 1
    assert sum(Decimal(value) for value in plan.budget["per_city_ceiling"].values()) > 0


def test_origin_adds_arrival_and_departure_legs(harness: Harness) -> None:
    plan = harness.planner.run(_brief(origin=OriginValue(name="London", country_code="gb")))

    assert [(leg.origin, leg.destination) for leg in plan.transfers] == [("London", "Rome"), ("Rome", "London")]
    assert "flights:london-rome" in plan.searches
    assert any(item.category == "transport" for item in plan.checklist)
    assert plan.days[0].logistics[0].kind == "transfer"


def test_too_many_cities_for_the_dates(harness: Harness) -> None:
    tour = DestinationValue(type="multi-city", primary="Rome", detected_cities=["Rome", "Florence", "Venice"])
    plan = harness.planner.run(_brief(destination=tour, date_range=DateRangeValue(start=date(2027, 3, 1), duration=2)))

    assert plan.status == "infeasible"
    assert [condition.code for condition in plan.conditions] == ["duration_insufficient"]
    assert plan.conditions[0].details["minimum_duration"] == 3
    assert plan.searches == []
    assert harness.provider.calls == []
    [entry] = harness.store.decision_log("trip-1", "plan_infeasible")
    assert entry.metadata["code"] == "duration_insufficient"


def test_no_hotels_makes_plan_infeasible() -> None:
    h = Harness(FixtureProvider(domains=("activities", "restaurants")))
    try:
        plan = h.planner.run(_brief())
    finally:
        h.gateway.close()

    assert plan.status == "infeasible"
    assert [condition.code for condition in plan.conditions] == ["no_feasible_accommodation"]
    assert [step["action"] for step in plan.relaxation_steps] == [
        "raise_ceiling",
        "widen_radius",
        "widen_radius",
        "lower_rating",
    ]
    assert len(h.store.decision_log("trip-1", "relaxation_step")) == 4
    assert plan.days == []


def test_destination_outside_the_catalog_is_a_condition(harness: Harness) -> None:
    plan = harness.planner.run(_brief(destination=DestinationValue(type="city", primary="Japan")))

    assert plan.status == "infeasible"
    assert [condition.code for condition in plan.conditions] == ["unknown_destination"]
    assert plan.conditions[0].suggestion
    assert plan.sequence == []
    assert harness.provider.calls == []
    [entry] = harness.store.decision_log("trip-1", "plan_infeasible")
    assert entry.metadata["code"] == "unknown_destination"
