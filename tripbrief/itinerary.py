"""Multi-city itinerary generation: sequencing, nights, activities, day assembly and costing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Iterator

from tripbrief.budget import BudgetBreakdown
from tripbrief.contracts import (
    BookingChecklistItem,
    DestinationValue,
    ItineraryDay,
    Offer,
    PlanCondition,
    RouteLeg,
    ScheduledItem,
)
from tripbrief.places import Place, PlaceCatalog, distance_between, haversine_km


ACTIVITY_RADIUS_KM = 8.0
RELAXED_RADII_KM: tuple[float, ...] = (12.0, 16.0)
# Days before the trip start by which each category should be booked.
CHECKLIST_LEAD_DAYS: dict[str, int] = {"accommodation": 42, "transport": 28, "activities": 14}
_PRIORITY_ORDER = {"urgent": 0, "important": 1, "optional": 2}


@dataclass
class CitySequence:
    cities: list[Place]
    distance_km: float
    lower_bound_km: float
    efficiency: float


@dataclass
class CityPlan:
    """Everything the day assembler needs for one city."""

    place: Place
    nights: int
    hotel: Offer | None
    activities: list[Offer] = field(default_factory=list)
    restaurants: list[Offer] = field(default_factory=list)
    breakdown: BudgetBreakdown | None = None


@dataclass
class Itinerary:
    days: list[ItineraryDay]
    totals: dict[str, Decimal]
    conditions: list[PlanCondition] = field(default_factory=list)


def cities_for_destination(
    destination: DestinationValue,
    duration: int,
    catalog: PlaceCatalog | None = None,
) -> list[Place]:
    """Cities to visit. A country expands to its gateway cities, more for longer trips."""
    catalog = catalog or PlaceCatalog()
    if destination.type == "multi-city":
        names = destination.detected_cities
    elif destination.type == "city":
        names = [destination.primary]
    else:
        country = catalog.country_by_code(destination.country_code or "") or catalog.country(destination.primary)
        if country is None:
            return []
        count = 3 if duration >= 12 else 2 if duration >= 8 else 1
        names = list(country.gateway_cities[:count])
    code = destination.country_code if destination.type != "multi-city" else None
    cities = []
    for name in names:
        place = catalog.resolve(name, code)
        if place is not None and place not in cities:
            cities.append(place)
    return cities


def minimum_duration(cities: list[Place]) -> int:
    return max(1, len(cities))


def duration_condition(cities: list[Place], duration: int) -> PlanCondition | None:
    needed = minimum_duration(cities)
    if duration >= needed:
        return None
    return PlanCondition(
        code="duration_insufficient",
        message=f"{len(cities)} cities need at least {needed} days; the trip has {duration}.",
        suggestion=f"Extend the trip to {needed} days or drop {len(cities) - duration} of the cities.",
        slot="date_range",
        details={"minimum_duration": needed, "cities": [city.name for city in cities]},
    )


def sequence_cities(
    cities: list[Place],
    *,
    origin: Place | None = None,
    leg_cost: Callable[[Place, Place], float] | None = None,
) -> CitySequence:
    """Nearest-neighbour order tried from every start city; ties go to the cheaper route.

    Efficiency is the minimum spanning tree length over the cities divided by the
    chosen path length, as a percentage.
    """
    if len(cities) <= 1:
        return CitySequence(cities=list(cities), distance_km=0.0, lower_bound_km=0.0, efficiency=100.0)
    leg_cost = leg_cost or (lambda a, b: distance_between(a, b))

    best: tuple[float, float, list[Place]] | None = None
    for start in cities:
        order = [start]
        remaining = [city for city in cities if city is not start]
        while remaining:
            here = order[-1]
            nearest = min(remaining, key=lambda city: (distance_between(here, city), city.name))
            order.append(nearest)
            remaining.remove(nearest)
        distance = _path_length(order)
        cost = sum(leg_cost(a, b) for a, b in zip(order, order[1:]))
        if origin is not None:
            distance += distance_between(origin, order[0])
            cost += leg_cost(origin, order[0])
        key = (round(distance, 3), round(cost, 2))
        if best is None or key < (best[0], best[1]):
            best = (key[0], key[1], order)

    if best is None:
        raise ValueError("sequence_cities needs at least one city")
    order = best[2]
    path = _path_length(order)
    lower = _mst_length(order)
    efficiency = 100.0 if path <= 0 else max(0.0, min(100.0, lower / path * 100))
    return CitySequence(cities=order, distance_km=round(path, 1), lower_bound_km=round(lower, 1), efficiency=round(efficiency, 1))


def allocate_nights(cities: list[Place], total_nights: int, interests: Iterable[str] = ()) -> dict[str, int]:
    """Share nights by interest weight (1 + highlight overlap), at least one per city.

    Leftover nights go by largest remainder, earlier cities first on ties.
    """
    if not cities:
        return {}
    if total_nights < len(cities):
        raise ValueError("not enough nights for one per city")
    wanted = set(interests)
    weights = [1 + len(wanted & set(city.highlights)) for city in cities]
    spare = total_nights - len(cities)
    total_weight = sum(weights)
    shares = [spare * weight / total_weight for weight in weights]
    nights = [1 + int(share) for share in shares]
    leftover = total_nights - sum(nights)
    by_remainder = sorted(range(len(cities)), key=lambda idx: (-(shares[idx] - int(shares[idx])), idx))
    for idx in by_remainder[:leftover]:
        nights[idx] += 1
    return {city.name: count for city, count in zip(cities, nights)}


def rank_activities(offers: Iterable[Offer], interests: Iterable[str] = ()) -> list[Offer]:
    """Preference-tag matches first, then rating, then price."""
    wanted = set(interests)
    return sorted(
        (offer for offer in offers if offer.domain == "activities"),
        key=lambda offer: (-len(wanted & set(offer.tags)), -(offer.rating or 0.0), offer.price, offer.offer_id),
    )


class ItineraryGenerator:
    """Assembles the day-by-day plan once hotels, offers and transfers are known."""

    def __init__(
        self,
        *,
        activity_radius_km: float = ACTIVITY_RADIUS_KM,
        relaxed_radii_km: tuple[float, ...] = RELAXED_RADII_KM,
    ) -> None:
        if activity_radius_km <= 0:
            raise ValueError("activity_radius_km must be > 0")
        self.activity_radius_km = activity_radius_km
        self.relaxed_radii_km = tuple(radius for radius in relaxed_radii_km if radius > activity_radius_km)

    def assemble(
        self,
        plans: list[CityPlan],
        *,
        start: date | None,
        interests: Iterable[str] = (),
        party: int = 1,
        arrival: RouteLeg | None = None,
        departure: RouteLeg | None = None,
        transfers: list[RouteLeg] | None = None,
    ) -> Itinerary:
        interests = list(interests)
        transfers = list(transfers or [])
        total_days = sum(plan.nights for plan in plans)
        days: list[ItineraryDay] = []
        conditions: list[PlanCondition] = []
        day_number = 0

        for city_index, plan in enumerate(plans):
            ranked = rank_activities(plan.activities, interests)
            used: set[str] = set()
            dinners = _dinner_rotation(plan.restaurants, plan.breakdown, party)
            inbound = transfers[city_index - 1] if city_index > 0 and city_index - 1 < len(transfers) else None
            for night in range(plan.nights):
                day_number += 1
                day_type = _day_type(day_number, total_days, first_in_city=(night == 0 and city_index > 0))
                day = ItineraryDay(
                    day_number=day_number,
                    date=start + timedelta(days=day_number - 1) if start else None,
                    city=plan.place.name,
                    day_type=day_type,
                    accommodation_id=plan.hotel.offer_id if plan.hotel else None,
                    radius_km=self.activity_radius_km,
                )
                self._logistics(day, plan, plans, city_index, night, total_days, arrival, departure, inbound)
                wanted_slots = _ACTIVITY_SLOTS[day_type]
                for slot in wanted_slots:
                    item = self._next_activity(day, plan, ranked, used, party)
                    if item is None:
                        # One budgeted lunch per day; any further gap is unpriced free time.
                        if any(_is_lunch(scheduled) for scheduled in day.slots.values()):
                            item = _free_time_item(plan)
                        else:
                            item = _lunch_item(plan, party)
                        if "no_activity_in_range" not in day.flags:
                            day.flags.append("no_activity_in_range")
                    day.slots[slot] = item
                if day_type != "departure":
                    day.slots["evening"] = next(dinners)
                _cost_day(day, plan, party)
                days.append(day)

        for day in days:
            if "no_activity_in_range" in day.flags or "radius_relaxed" in day.flags:
                conditions.append(
                    PlanCondition(
                        code="activities_out_of_radius",
                        message=f"Day {day.day_number} in {day.city} has few activities within {self.activity_radius_km:g} km of the hotel.",
                        suggestion="Consider a hotel closer to the centre or a free afternoon.",
                        details={"day": day.day_number, "radius_km": day.radius_km, "flags": list(day.flags)},
                    )
                )
        return Itinerary(days=days, totals=_totals(days), conditions=conditions)

    def _next_activity(
        self,
        day: ItineraryDay,
        plan: CityPlan,
        ranked: list[Offer],
        used: set[str],
        party: int,
    ) -> ScheduledItem | None:
        anchor = _anchor(plan)
        for radius in (self.activity_radius_km, *self.relaxed_radii_km):
            for offer in ranked:
                if offer.offer_id in used:
                    continue
                distance = _distance(offer, anchor)
                if distance > radius:
                    continue
                # A widened radius stays in force for the rest of the day.
                if radius > day.radius_km:
                    day.radius_km = radius
                    if "radius_relaxed" not in day.flags:
                        day.flags.append("radius_relaxed")
                used.add(offer.offer_id)
                return ScheduledItem(
                    kind="activity",
                    title=offer.name,
                    category="activities",
                    cost=offer.price,
                    offer_id=offer.offer_id,
                    distance_km=round(distance, 2),
                    tags=list(offer.tags),
                )
        return None

    def _logistics(
        self,
        day: ItineraryDay,
        plan: CityPlan,
        plans: list[CityPlan],
        city_index: int,
        night: int,
        total_days: int,
        arrival: RouteLeg | None,
        departure: RouteLeg | None,
        inbound: RouteLeg | None,
    ) -> None:
        hotel_name = plan.hotel.name if plan.hotel else f"accommodation in {plan.place.name}"
        if day.day_number == 1 and arrival is not None:
            day.logistics.append(_transfer_item(arrival))
        if night == 0 and city_index > 0:
            previous = plans[city_index - 1]
            previous_name = previous.hotel.name if previous.hotel else f"accommodation in {previous.place.name}"
            day.logistics.append(ScheduledItem(kind="check_out", title=f"Check out of {previous_name}", category="accommodation"))
            if inbound is not None:
                day.logistics.append(_transfer_item(inbound))
        if night == 0:
            day.logistics.append(
                ScheduledItem(kind="check_in", title=f"Check in at {hotel_name}", category="accommodation", offer_id=plan.hotel.offer_id if plan.hotel else None)
            )
        if day.day_number == total_days:
            day.logistics.append(ScheduledItem(kind="check_out", title=f"Check out of {hotel_name}", category="accommodation"))
            if departure is not None:
                day.logistics.append(_transfer_item(departure))
            else:
                day.logistics.append(
                    ScheduledItem(kind="transfer", title=f"Transfer to the departure point in {plan.place.name}", category="transport")
                )

    def checklist(
        self,
        plans: list[CityPlan],
        legs: list[RouteLeg],
        days: list[ItineraryDay],
        *,
        start: date | None,
        today: date,
        currency: str,
    ) -> list[BookingChecklistItem]:
        """Bookings to make ahead, urgent first, deadlines never in the past."""

        def deadline(category: str) -> date | None:
            if start is None:
                return None
            return max(today, start - timedelta(days=CHECKLIST_LEAD_DAYS[category]))

        items: list[BookingChecklistItem] = []
        for plan in plans:
            if plan.hotel is None:
                continue
            items.append(
                BookingChecklistItem(
                    item=f"Book {plan.hotel.name} for {plan.nights} night{'s' if plan.nights != 1 else ''} ({currency})",
                    category="accommodation",
                    priority="urgent",
                    deadline=deadline("accommodation"),
                    estimated_cost=plan.hotel.price * plan.nights,
                    city=plan.place.name,
                )
            )
        for leg in legs:
            segment = leg.primary.segments[0]
            if not any(s.mode in {"train", "high_speed_train", "flight", "bus"} for s in leg.primary.segments):
                continue
            items.append(
                BookingChecklistItem(
                    item=f"Book {leg.primary.main_mode.replace('_', ' ')} {leg.origin} -> {leg.destination} ({segment.provider})",
                    category="transport",
                    priority="urgent",
                    deadline=deadline("transport"),
                    estimated_cost=leg.primary.total_cost,
                    city=leg.destination,
                )
            )
        bookable = _bookable_ids(plans)
        for day in days:
            for item in day.slots.values():
                if item.kind == "activity" and item.offer_id in bookable:
                    items.append(
                        BookingChecklistItem(
                            item=f"Reserve {item.title} (day {day.day_number})",
                            category="activities",
                            priority="important",
                            deadline=deadline("activities"),
                            estimated_cost=item.cost,
                            city=day.city,
                        )
                    )
        items.sort(key=lambda entry: (_PRIORITY_ORDER[entry.priority], entry.deadline or date.max, entry.item))
        return items


_ACTIVITY_SLOTS: dict[str, tuple[str, ...]] = {
    "arrival": ("afternoon",),
    "travel": ("afternoon",),
    "full": ("morning", "afternoon"),
    "departure": ("morning",),
    "single": ("morning", "afternoon"),
}


def _day_type(day_number: int, total_days: int, *, first_in_city: bool) -> str:
    if total_days == 1:
        return "single"
    if day_number == 1:
        return "arrival"
    if day_number == total_days:
        return "departure"
    if first_in_city:
        return "travel"
    return "full"


def _dinner_rotation(restaurants: list[Offer], breakdown: BudgetBreakdown | None, party: int) -> Iterator[ScheduledItem]:
    limit = breakdown.meals.get("dinner") if breakdown else None
    ranked = sorted(
        (offer for offer in restaurants if offer.domain == "restaurants"),
        key=lambda offer: (limit is not None and offer.price > limit, -(offer.rating or 0.0), offer.price, offer.offer_id),
    )
    index = 0
    while True:
        if ranked:
            offer = ranked[index % len(ranked)]
            yield ScheduledItem(
                kind="meal",
                title=f"Dinner at {offer.name}",
                category="food",
                cost=offer.price * party,
                offer_id=offer.offer_id,
                tags=list(offer.tags),
            )
        else:
            yield ScheduledItem(kind="meal", title="Dinner near the hotel", category="food", cost=(limit or Decimal("0")) * party)
        index += 1


def _lunch_item(plan: CityPlan, party: int) -> ScheduledItem:
    limit = plan.breakdown.meals.get("lunch", Decimal("0")) if plan.breakdown else Decimal("0")
    return ScheduledItem(kind="meal", title=f"Long lunch and free time in {plan.place.name}", category="food", cost=limit * party)


def _free_time_item(plan: CityPlan) -> ScheduledItem:
    return ScheduledItem(kind="activity", title=f"Free time in {plan.place.name}", category="activities", cost=Decimal("0"))


def _is_lunch(item: ScheduledItem) -> bool:
    return item.kind == "meal" and item.title.startswith("Long lunch")


def _transfer_item(leg: RouteLeg) -> ScheduledItem:
    title = f"{leg.primary.main_mode.replace('_', ' ').title()} {leg.origin} -> {leg.destination}"
    if leg.backup is not None:
        title += f" (backup: {leg.backup.main_mode.replace('_', ' ')})"
    return ScheduledItem(kind="transfer", title=title, category="transport", cost=leg.primary.total_cost)


def _cost_day(day: ItineraryDay, plan: CityPlan, party: int) -> None:
    costs: dict[str, Decimal] = {"accommodation": Decimal("0"), "activities": Decimal("0"), "food": Decimal("0"), "transport": Decimal("0")}
    if plan.hotel is not None:
        costs["accommodation"] += plan.hotel.price
    for item in [*day.slots.values(), *day.logistics]:
        costs[item.category] += item.cost
    if plan.breakdown is not None:
        # Breakfast and lunch are budgeted, not booked.
        costs["food"] += plan.breakdown.meals.get("breakfast", Decimal("0")) * party
        if not any(_is_lunch(item) for item in day.slots.values()):
            costs["food"] += plan.breakdown.meals.get("lunch", Decimal("0")) * party
    day.costs_by_category = costs
    day.total_cost = sum(costs.values(), Decimal("0"))


def _totals(days: list[ItineraryDay]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for day in days:
        for category, amount in day.costs_by_category.items():
            totals[category] = totals.get(category, Decimal("0")) + amount
    totals["total"] = sum((day.total_cost for day in days), Decimal("0"))
    return totals


def _bookable_ids(plans: list[CityPlan]) -> set[str]:
    return {offer.offer_id for plan in plans for offer in plan.activities if offer.attributes.get("bookable")}


def _anchor(plan: CityPlan) -> tuple[float, float]:
    if plan.hotel is not None and plan.hotel.lat is not None and plan.hotel.lon is not None:
        return plan.hotel.lat, plan.hotel.lon
    return plan.place.lat, plan.place.lon


def _distance(offer: Offer, anchor: tuple[float, float]) -> float:
    if offer.lat is None or offer.lon is None:
        return float("inf")
    return haversine_km(anchor[0], anchor[1], offer.lat, offer.lon)


def _path_length(order: list[Place]) -> float:
    return sum(distance_between(a, b) for a, b in zip(order, order[1:]))


def _mst_length(cities: list[Place]) -> float:
    """Prim's algorithm over the complete graph of cities."""
    if len(cities) <= 1:
        return 0.0
    in_tree = {0}
    best = {idx: distance_between(cities[0], cities[idx]) for idx in range(1, len(cities))}
    total = 0.0
    while best:
        nxt = min(best, key=best.get)
        total += best.pop(nxt)
        in_tree.add(nxt)
        for idx in best:
            best[idx] = min(best[idx], distance_between(cities[nxt], cities[idx]))
    return total
