from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from tripbrief.budget import build_breakdown
from tripbrief.contracts import DestinationValue, Offer
from tripbrief.itinerary import (
    CityPlan,
    ItineraryGenerator,
    allocate_nights,
    cities_for_destination,
    duration_condition,
    rank_activities,
    sequence_cities,
)
from tripbrief.places import Place, PlaceCatalog
from tripbrief.transfer import TransferComposer


CATALOG = PlaceCatalog()
ROME = CATALOG.best("Rome")
FLORENCE = CATALOG.best("Florence")
VENICE = CATALOG.best("Venice")
START = date(2027, 3, 1)


def _offer(place: Place, domain: str, offer_id: str, *, km: float = 0.0, price: str = "10", tags=(), rating=4.0, **attributes) -> Offer:  # type: ignore[no-untyped-def]
    return Offer(
        offer_id=offer_id,
        domain=domain,
        provider="test",
        name=f"{place.name} {offer_id}",
        city=place.name,
        lat=place.lat + km / 111.32,
        lon=place.lon,
        price=Decimal(price),
        rating=rating,
        tags=list(tags),
        attributes=attributes,
    )


def _plan(place: Place, nights: int, *, activity_km: float = 1.0, activities: int = 12, bookable: bool = False) -> CityPlan:
    return CityPlan(
        place=place,
        nights=nights,
        hotel=_offer(place, "hotels", f"hotel-{place.name}", price="100"),
        activities=[
            _offer(place, "activities", f"act-{place.name}-{i}", km=activity_km, bookable=bookable and i == 0)
            for i in range(activities)
        ],
        restaurants=[_offer(place, "restaurants", f"rest-{place.name}-{i}", price="25") for i in range(3)],
        breakdown=build_breakdown(Decimal("1000"), "EUR", nights),
    )


def test_country_expands_by_trip_length() -> None:
    italy = DestinationValue(type="country", primary="Italy", country_code="it")
    assert [c.name for c in cities_for_destination(italy, 7, CATALOG)] == ["Rome"]
    assert [c.name for c in cities_for_destination(italy, 8, CATALOG)] == ["Rome", "Florence"]
    assert [c.name for c in cities_for_destination(italy, 12, CATALOG)] == ["Rome", "Florence", "Venice"]


def test_city_and_multi_city_destinations() -> None:
    paris = DestinationValue(type="city", primary="Paris", country_code="fr")
    assert cities_for_destination(paris, 3, CATALOG)[0].country_code == "fr"
    tour = DestinationValue(type="multi-city", primary="Rome", detected_cities=["Rome", "Venice"])
    assert [c.name for c in cities_for_destination(tour, 5, CATALOG)] == ["Rome", "Venice"]


def test_duration_insufficient_reports_minimum() -> None:
    condition = duration_condition([ROME, FLORENCE, VENICE], 2)
    assert condition is not None
    assert condition.code == "duration_insufficient"
    assert condition.details["minimum_duration"] == 3
    assert duration_condition([ROME, FLORENCE], 2) is None


def test_sequence_visits_middle_city_in_between() -> None:
    sequence = sequence_cities([VENICE, ROME, FLORENCE])
    assert [c.name for c in sequence.cities][1] == "Florence"
    assert sequence.efficiency == 100.0
    assert sequence_cities([ROME]).efficiency == 100.0


def test_sequence_uses_route_costs_with_origin() -> None:
    london = CATALOG.best("London")
    composer = TransferComposer()
    sequence = sequence_cities(
        [ROME, VENICE, FLORENCE],
        origin=london,
        leg_cost=lambda a, b: float(composer.compose_leg(a, b).primary.total_cost),
    )
    assert sequence.cities[0].name == "Venice"
    assert 0 < sequence.efficiency <= 100


def test_nights_follow_interests_and_sum_to_total() -> None:
    nights = allocate_nights([ROME, FLORENCE], 7, interests=["art"])
    assert nights == {"Rome": 3, "Florence": 4}
    assert sum(allocate_nights([ROME, FLORENCE, VENICE], 10).values()) == 10
    with pytest.raises(ValueError):
        allocate_nights([ROME, FLORENCE], 1)


def test_rank_activities_prefers_matching_tags() -> None:
    offers = [
        _offer(ROME, "activities", "museum", tags=["culture"], rating=3.8),
        _offer(ROME, "activities", "bar", tags=["nightlife"], rating=4.9),
    ]
    assert [o.offer_id for o in rank_activities(offers, ["culture"])] == ["museum", "bar"]
    assert [o.offer_id for o in rank_activities(offers)] == ["bar", "museum"]


def test_day_types_and_logistics_single_city() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 3)], start=START)
    days = itinerary.days

    assert [d.day_type for d in days] == ["arrival", "full", "departure"]
    assert [d.date for d in days] == [date(2027, 3, 1), date(2027, 3, 2), date(2027, 3, 3)]
    assert set(days[0].slots) == {"afternoon", "evening"}
    assert set(days[1].slots) == {"morning", "afternoon", "evening"}
    assert set(days[2].slots) == {"morning"}
    assert [item.kind for item in days[0].logistics] == ["check_in"]
    assert [item.kind for item in days[2].logistics] == ["check_out", "transfer"]
    assert days[2].logistics[1].title == "Transfer to the departure point in Rome"
    assert itinerary.conditions == []


def test_travel_day_in_second_city() -> None:
    leg = TransferComposer().compose_leg(ROME, FLORENCE)
    itinerary = ItineraryGenerator().assemble(
        [_plan(ROME, 2), _plan(FLORENCE, 2)],
        start=START,
        transfers=[leg],
    )
    days = itinerary.days

    assert [d.day_type for d in days] == ["arrival", "full", "travel", "departure"]
    assert [d.city for d in days] == ["Rome", "Rome", "Florence", "Florence"]
    assert [item.kind for item in days[2].logistics] == ["check_out", "transfer", "check_in"]
    assert "Rome -> Florence" in days[2].logistics[1].title
    assert days[2].accommodation_id == "hotel-Florence"


def test_single_day_trip() -> None:
    [day] = ItineraryGenerator().assemble([_plan(ROME, 1)], start=START).days
    assert day.day_type == "single"
    assert set(day.slots) == {"morning", "afternoon", "evening"}


def test_activities_stay_inside_radius() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 4)], start=START)
    activities = [item for day in itinerary.days for item in day.slots.values() if item.kind == "activity"]

    assert activities
    assert all(item.distance_km <= 8.0 for item in activities)
    assert len({item.offer_id for item in activities}) == len(activities)


def test_radius_relaxed_when_nothing_nearby() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 2, activity_km=10.0)], start=START)

    assert all("radius_relaxed" in day.flags for day in itinerary.days)
    assert all(day.radius_km == 12.0 for day in itinerary.days)
    assert {c.code for c in itinerary.conditions} == {"activities_out_of_radius"}


def test_lunch_fills_slot_when_no_activity_in_range() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 2, activity_km=30.0)], start=START)
    first = itinerary.days[0]

    assert first.slots["afternoon"].kind == "meal"
    assert first.slots["afternoon"].title.startswith("Long lunch")
    assert "no_activity_in_range" in first.flags
    assert len(itinerary.conditions) == 2


def test_lunch_is_scheduled_once_per_day() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 3, activity_km=30.0)], start=START)
    middle = itinerary.days[1]

    assert middle.day_type == "full"
    assert middle.slots["morning"].title.startswith("Long lunch")
    assert middle.slots["afternoon"].title == "Free time in Rome"
    assert middle.slots["afternoon"].cost == Decimal("0")
    # dinner 25, breakfast 12.50, one lunch 17.50
    assert middle.costs_by_category["food"] == Decimal("55.00")
    assert middle.costs_by_category["activities"] == Decimal("0")


def test_costs_charge_accommodation_every_day() -> None:
    itinerary = ItineraryGenerator().assemble([_plan(ROME, 3)], start=START)

    assert itinerary.totals["accommodation"] == Decimal("300")
    assert itinerary.totals["total"] == sum(day.total_cost for day in itinerary.days)
    first = itinerary.days[0]
    # dinner 25 over the 20.00 limit, breakfast 12.50, lunch 17.50
    assert first.costs_by_category["food"] == Decimal("55.00")
    assert first.costs_by_category["activities"] == Decimal("10")
    assert first.total_cost == Decimal("165.00")


def test_checklist_priorities_and_deadlines() -> None:
    plans = [_plan(ROME, 2, bookable=True), _plan(FLORENCE, 2)]
    leg = TransferComposer().compose_leg(ROME, FLORENCE)
    generator = ItineraryGenerator()
    itinerary = generator.assemble(plans, start=START, transfers=[leg])

    items = generator.checklist(plans, [leg], itinerary.days, start=START, today=date(2026, 10, 17), currency="EUR")

    assert [item.priority for item in items][:3] == ["urgent", "urgent", "urgent"]
    hotels = [item for item in items if item.category == "accommodation"]
    assert len(hotels) == 2
    assert hotels[0].deadline == date(2027, 1, 18)
    transport = [item for item in items if item.category == "transport"]
    assert transport[0].deadline == date(2027, 2, 1)
    activities = [item for item in items if item.category == "activities"]
    assert [item.priority for item in activities] == ["important"]
    assert activities[0].deadline == date(2027, 2, 15)


def test_checklist_deadline_never_in_the_past() -> None:
    plans = [_plan(ROME, 2)]
    generator = ItineraryGenerator()
    itinerary = generator.assemble(plans, start=date(2026, 10, 20))
    items = generator.checklist(plans, [], itinerary.days, start=date(2026, 10, 20), today=date(2026, 10, 17), currency="EUR")
    assert items[0].deadline == date(2026, 10, 17)
