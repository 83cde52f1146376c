"""Planning pass: budget -> searches -> accommodation -> transfers -> itinerary."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
import uuid
from typing import Any, Callable

from tripbrief import telemetry
from tripbrief.brief import slot_hashes, slot_value
from tripbrief.budget import CEILING_RAISE, CENTS, BudgetController
from tripbrief.contracts import (
    DateRangeValue,
    DestinationValue,
    Offer,
    OriginValue,
    PlanCondition,
    PreferencesValue,
    ProposedPlan,
    RouteLeg,
    TravelersValue,
    TripBrief,
)
from tripbrief.itinerary import (
    CityPlan,
    ItineraryGenerator,
    allocate_nights,
    cities_for_destination,
    duration_condition,
    sequence_cities,
)
from tripbrief.persistence import TripStore
from tripbrief.places import Place, PlaceCatalog
from tripbrief.providers import LookupOutcome, ProviderGateway
from tripbrief.search_planner import SearchPlanner
from tripbrief.transfer import TransferComposer


class PlanningPass:
    """Builds a `ProposedPlan` from the confirmed slots of a brief snapshot.

    The pass never mutates the brief. Data problems come back as conditions on
    the plan (status `infeasible` when no usable plan exists); only storage or
    programming errors raise.
    """

    def __init__(
        self,
        store: TripStore,
        gateway: ProviderGateway,
        *,
        catalog: PlaceCatalog | None = None,
        composer: TransferComposer | None = None,
        generator: ItineraryGenerator | None = None,
        search_planner: SearchPlanner | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._catalog = catalog or PlaceCatalog()
        self._composer = composer or TransferComposer()
        self._generator = generator or ItineraryGenerator()
        self._search_planner = search_planner or SearchPlanner(self._catalog)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def close(self) -> None:
        self._gateway.close()

    def run(self, brief: TripBrief) -> ProposedPlan:
        destination: DestinationValue = slot_value(brief, "destination")
        dates: DateRangeValue = slot_value(brief, "date_range")
        travelers: TravelersValue = slot_value(brief, "travelers")
        style: str = slot_value(brief, "style")
        preferences: PreferencesValue | None = _confirmed(brief, "preferences")
        origin_value: OriginValue | None = _confirmed(brief, "origin")
        interests = list(preferences.interests) if preferences else []
        party = travelers.adults + travelers.children
        duration = dates.duration or 1
        now = self._clock()

        plan = ProposedPlan(
            plan_id=f"plan-{uuid.uuid4().hex[:12]}",
            trip_id=brief.trip_id,
            status="proposed",
            brief_version=brief.version,
            based_on=slot_hashes(brief),
            currency=slot_value(brief, "budget").currency,
            created_at=now,
        )

        cities = cities_for_destination(destination, duration, self._catalog)
        if not cities:
            return self._infeasible(
                plan,
                [
                    PlanCondition(
                        code="unknown_destination",
                        message=f"I don't have places to stay or visit for {destination.primary} yet.",
                        suggestion="Try a nearby city or country I know, such as its capital.",
                        slot="destination",
                        details={"destination": destination.primary, "type": destination.type},
                    )
                ],
            )
        missing_duration = duration_condition(cities, duration)
        if missing_duration is not None:
            return self._infeasible(plan, [missing_duration])

        origin = self._catalog.resolve(origin_value.name, origin_value.country_code) if origin_value else None
        if origin is not None and any(origin.name == city.name for city in cities):
            origin = None

        with telemetry.start_span("plan.budget", {"tripbrief.trip_id": brief.trip_id}) as span:
            controller = BudgetController.from_budget(slot_value(brief, "budget"), nights=duration, adults=travelers.adults)
            sequence = sequence_cities(cities, origin=origin, leg_cost=self._leg_cost)
            nights = allocate_nights(sequence.cities, duration, interests)
            per_city = controller.split(nights) if len(sequence.cities) > 1 else {sequence.cities[0].name: controller}
            plan.sequence = [city.name for city in sequence.cities]
            plan.nights = nights
            plan.efficiency = sequence.efficiency
            plan.budget = {
                **controller.breakdown.model_dump(mode="json"),
                "per_city_ceiling": {name: str(ctrl.breakdown.per_night_ceiling) for name, ctrl in per_city.items()},
            }
            telemetry.set_attributes(span, cities=plan.sequence, total=str(controller.total))

        with telemetry.start_span("plan.search", {"tripbrief.trip_id": brief.trip_id}) as span:
            ceilings = {
                name: (ctrl.breakdown.per_night_ceiling * (1 + CEILING_RAISE)).quantize(CENTS, rounding=ROUND_DOWN)
                for name, ctrl in per_city.items()
            }
            requests = self._search_planner.generate(brief, cities=sequence.cities, nights=nights, ceilings=ceilings)
            outcomes = self._gateway.search_many(requests)
            for outcome in outcomes:
                request_id = self._store.create_search_request(brief.trip_id, outcome.request.domain, outcome.request.params)
                self._store.save_offers(brief.trip_id, request_id, outcome.offer_set)
                plan.searches.append(outcome.request.request_key)
                plan.conditions.extend(outcome.conditions)
            telemetry.set_attributes(
                span,
                lookups=len(outcomes),
                cache_hits=sum(1 for outcome in outcomes if outcome.from_cache),
            )

        offers = _offers_by_city(outcomes)
        city_plans: list[CityPlan] = []
        infeasible: list[PlanCondition] = []
        for city in sequence.cities:
            ctrl = per_city[city.name]
            selection = ctrl.select_accommodation(
                offers.get((city.name, "hotels"), []),
                center=(city.lat, city.lon),
                style=style,
                city=city.name,
            )
            for step in selection.steps:
                plan.relaxation_steps.append({"city": city.name, **step.model_dump(mode="json")})
                self._store.append_decision_log(
                    brief.trip_id,
                    "relaxation_step",
                    f"{city.name}: {step.detail}",
                    {"city": city.name, "step": step.step, "action": step.action},
                )
            if selection.condition is not None:
                infeasible.append(selection.condition)
                continue
            plan.accommodations[city.name] = selection.offer
            city_plans.append(
                CityPlan(
                    place=city,
                    nights=nights[city.name],
                    hotel=selection.offer,
                    activities=offers.get((city.name, "activities"), []),
                    restaurants=offers.get((city.name, "restaurants"), []),
                    breakdown=ctrl.breakdown,
                )
            )
        if infeasible:
            return self._infeasible(plan, infeasible)

        with telemetry.start_span("plan.transfers", {"tripbrief.trip_id": brief.trip_id}) as span:
            flights = [offer for (_, domain), found in offers.items() if domain == "flights" for offer in found]
            arrival = self._leg(origin, sequence.cities[0], party, dates, 0, flights) if origin else None
            between = [
                self._leg(a, b, party, dates, _day_offset(plan.nights, plan.sequence, idx), ())
                for idx, (a, b) in enumerate(zip(sequence.cities, sequence.cities[1:]))
            ]
            departure = self._leg(sequence.cities[-1], origin, party, dates, duration - 1, ()) if origin else None
            plan.transfers = [leg for leg in (arrival, *between, departure) if leg is not None]
            for leg in plan.transfers:
                if leg.single_route_risk:
                    plan.conditions.append(
                        PlanCondition(
                            code="single_route_risk",
                            message=f"Only one route found for {leg.origin} -> {leg.destination}.",
                            suggestion="Leave extra time for this transfer.",
                            details={"origin": leg.origin, "destination": leg.destination},
                        )
                    )
            telemetry.set_attributes(span, legs=len(plan.transfers))

        with telemetry.start_span("plan.itinerary", {"tripbrief.trip_id": brief.trip_id}) as span:
            itinerary = self._generator.assemble(
                city_plans,
                start=dates.start,
                interests=interests,
                party=party,
                arrival=arrival,
                departure=departure,
                transfers=between,
            )
            plan.days = itinerary.days
            plan.totals = itinerary.totals
            plan.conditions.extend(itinerary.conditions)
            plan.checklist = self._generator.checklist(
                city_plans,
                plan.transfers,
                plan.days,
                start=dates.start,
                today=now.date(),
                currency=plan.currency,
            )
            for category in ("accommodation", "activities", "food"):
                controller.reserve(category, itinerary.totals.get(category, Decimal("0")))
            plan.risk_level = controller.risk_level
            telemetry.set_attributes(span, days=len(plan.days), risk=plan.risk_level)
        return plan

    def _leg(
        self,
        origin: Place,
        destination: Place,
        party: int,
        dates: DateRangeValue,
        offset: int,
        flights: list[Offer] | tuple[()],
    ) -> RouteLeg:
        depart = dates.start + timedelta(days=offset) if dates.start else None
        return self._composer.compose_leg(origin, destination, travelers=party, depart=depart, offers=flights)

    def _leg_cost(self, origin: Place, destination: Place) -> float:
        return float(self._composer.compose_leg(origin, destination).primary.total_cost)

    def _infeasible(self, plan: ProposedPlan, conditions: list[PlanCondition]) -> ProposedPlan:
        plan.status = "infeasible"
        plan.conditions.extend(conditions)
        for condition in conditions:
            self._store.append_decision_log(
                plan.trip_id,
                "plan_infeasible",
                condition.message,
                {"code": condition.code, **condition.details},
            )
        return plan


def _confirmed(brief: TripBrief, slot: str) -> Any:
    if brief.slot(slot).locked_at is None:
        return None
    return slot_value(brief, slot)


def _offers_by_city(outcomes: list[LookupOutcome]) -> dict[tuple[str, str], list[Offer]]:
    grouped: dict[tuple[str, str], list[Offer]] = {}
    for outcome in outcomes:
        key = (outcome.request.city or "", outcome.request.domain)
        grouped.setdefault(key, []).extend(outcome.offer_set.offers)
    return grouped


def _day_offset(nights: dict[str, int], sequence: list[str], leg_index: int) -> int:
    return sum(nights[name] for name in sequence[: leg_index + 1])
