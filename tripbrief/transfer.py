"""Transfer composer: candidate routes per leg, weighted scoring, primary + backup selection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
import math
from typing import Callable, Iterable

from tripbrief.contracts import Offer, RouteLeg, RoutePlan, RouteSegment
from tripbrief.places import Place, distance_between
from tripbrief.settings import RouteWeights


STRATEGIES: tuple[str, ...] = (
    "fastest",
    "cheapest",
    "most_reliable",
    "fewest_transfers",
    "public_transport_preferred",
    "hybrid",
)
# Ground routes are longer than the great-circle distance.
ROAD_FACTOR = 1.25
TRANSFER_RELIABILITY_PENALTY = 5.0


@dataclass(frozen=True)
class ModeProfile:
    mode: str
    provider: str
    speed_kmh: float
    base_cost: Decimal
    cost_per_km: Decimal
    reliability: float
    min_km: float = 0.0
    max_km: float = math.inf
    overhead_minutes: int = 0
    public: bool = True
    per_vehicle: bool = False

    def serves(self, distance_km: float) -> bool:
        return self.min_km <= distance_km <= self.max_km


DEFAULT_MODES: tuple[ModeProfile, ...] = (
    ModeProfile("walking", "on_foot", 4.5, Decimal("0"), Decimal("0"), 98, max_km=3, public=False),
    ModeProfile("metro", "city_metro", 30, Decimal("2.50"), Decimal("0"), 92, max_km=25, overhead_minutes=8),
    ModeProfile("tram", "city_tram", 18, Decimal("2.20"), Decimal("0"), 88, max_km=15, overhead_minutes=6),
    ModeProfile("bus", "regional_coach", 70, Decimal("5"), Decimal("0.06"), 80, min_km=20, max_km=1500, overhead_minutes=15),
    ModeProfile("train", "national_rail", 120, Decimal("10"), Decimal("0.12"), 90, min_km=15, max_km=1500, overhead_minutes=20),
    ModeProfile("high_speed_train", "high_speed_rail", 220, Decimal("20"), Decimal("0.18"), 93, min_km=150, max_km=1200, overhead_minutes=30),
    ModeProfile("taxi", "local_taxi", 35, Decimal("4"), Decimal("1.80"), 85, max_km=80, public=False, per_vehicle=True),
    ModeProfile("car_hire", "car_rental", 80, Decimal("45"), Decimal("0.15"), 82, min_km=30, max_km=1500, public=False, per_vehicle=True),
    ModeProfile("flight", "scheduled_air", 750, Decimal("60"), Decimal("0.08"), 78, min_km=300, overhead_minutes=150),
)
_AIRPORT_ACCESS_KM = 20.0


@dataclass(frozen=True)
class LegContext:
    distance_km: float
    travelers: int = 1
    origin: str = "origin"
    destination: str = "destination"


class TransferComposer:
    """Builds every leg with a primary route and a distinct backup.

    Candidates come from several strategies; each is scored as a weighted sum of
    normalised time and cost plus reliability and convenience. A leg with a
    single distinct candidate is flagged `single_route_risk`.
    """

    def __init__(
        self,
        *,
        weights: RouteWeights | None = None,
        modes: Iterable[ModeProfile] = DEFAULT_MODES,
    ) -> None:
        self.weights = (weights or RouteWeights()).normalized()
        self.modes = tuple(modes)
        self._strategies: dict[str, Callable[[LegContext], RoutePlan | None]] = {
            "fastest": self._fastest,
            "cheapest": self._cheapest,
            "most_reliable": self._most_reliable,
            "fewest_transfers": self._fewest_transfers,
            "public_transport_preferred": self._public_transport,
            "hybrid": self._hybrid,
        }

    def compose_leg(
        self,
        origin: Place,
        destination: Place,
        *,
        travelers: int = 1,
        depart: date | None = None,
        offers: Iterable[Offer] = (),
    ) -> RouteLeg:
        distance = distance_between(origin, destination)
        context = LegContext(distance, travelers, origin.name, destination.name)
        plans = self.candidates(context, offers=offers)
        if not plans:
            raise ValueError(f"no transport mode serves {origin.name} -> {destination.name}")
        ranked = self.rank(plans)
        primary = ranked[0]
        backup = _pick_backup(primary, ranked[1:])
        return RouteLeg(
            origin=origin.name,
            destination=destination.name,
            depart=depart,
            distance_km=round(distance, 1),
            primary=primary,
            backup=backup,
            single_route_risk=backup is None,
        )

    def candidates(self, context: LegContext, *, offers: Iterable[Offer] = ()) -> list[RoutePlan]:
        """Distinct route plans from all strategies plus any provider flight offers."""
        plans: list[RoutePlan] = []
        seen: set[tuple[tuple[str, str], ...]] = set()
        for name in STRATEGIES:
            plan = self._strategies[name](context)
            if plan is not None:
                _add_unique(plans, seen, plan)
        for offer in offers:
            if offer.domain == "flights":
                plan = self._offer_plan(offer, context)
                if plan is not None:
                    _add_unique(plans, seen, plan)
        return plans

    def rank(self, plans: list[RoutePlan]) -> list[RoutePlan]:
        """Score plans against each other and return them best first."""
        times = [plan.total_minutes for plan in plans]
        costs = [float(plan.total_cost) for plan in plans]
        scored: list[RoutePlan] = []
        for plan in plans:
            time_score = _lower_is_better(plan.total_minutes, times)
            cost_score = _lower_is_better(float(plan.total_cost), costs)
            score = 100 * (
                self.weights.time * time_score
                + self.weights.cost * cost_score
                + self.weights.reliability * plan.reliability / 100
                + self.weights.convenience * plan.convenience / 100
            )
            scored.append(plan.model_copy(update={"score": round(score, 2)}))
        return sorted(scored, key=lambda plan: (-plan.score, plan.total_cost, plan.strategy))

    # -- strategies -------------------------------------------------------------

    def _direct(self, context: LegContext) -> list[RoutePlan]:
        return [
            self._plan_for(profile, context, strategy=profile.mode)
            for profile in self.modes
            if profile.serves(context.distance_km)
        ]

    def _fastest(self, context: LegContext) -> RoutePlan | None:
        plans = self._direct(context)
        return _relabel(min(plans, key=lambda p: (p.total_minutes, p.total_cost)), "fastest") if plans else None

    def _cheapest(self, context: LegContext) -> RoutePlan | None:
        plans = self._direct(context)
        return _relabel(min(plans, key=lambda p: (p.total_cost, p.total_minutes)), "cheapest") if plans else None

    def _most_reliable(self, context: LegContext) -> RoutePlan | None:
        plans = self._direct(context)
        return _relabel(max(plans, key=lambda p: (p.reliability, -p.total_minutes)), "most_reliable") if plans else None

    def _fewest_transfers(self, context: LegContext) -> RoutePlan | None:
        plans = self._direct(context)
        return _relabel(min(plans, key=lambda p: (p.transfers, p.total_minutes)), "fewest_transfers") if plans else None

    def _public_transport(self, context: LegContext) -> RoutePlan | None:
        plans = [
            self._plan_for(profile, context, strategy="public_transport_preferred")
            for profile in self.modes
            if profile.public and profile.serves(context.distance_km)
        ]
        return min(plans, key=lambda p: (p.total_minutes, p.total_cost)) if plans else None

    def _hybrid(self, context: LegContext) -> RoutePlan | None:
        """Main public leg plus a door-to-door taxi for the last stretch."""
        main = [
            p
            for p in self.modes
            if p.public and p.mode != "flight" and p.min_km > 0 and p.serves(context.distance_km)
        ]
        taxi = next((p for p in self.modes if p.mode == "taxi"), None)
        if not main or taxi is None:
            return None
        profile = min(main, key=lambda p: context.distance_km / p.speed_kmh)
        station = f"{context.destination} station"
        trunk = self._segment(profile, context.distance_km, context.travelers, context.origin, station)
        last_mile = self._segment(taxi, 4.0, context.travelers, station, context.destination)
        return _plan("hybrid", [trunk, last_mile], reliability=min(profile.reliability, taxi.reliability))

    def _offer_plan(self, offer: Offer, context: LegContext) -> RoutePlan | None:
        air = next((p for p in self.modes if p.mode == "flight"), None)
        if air is None:
            return None
        minutes = int(offer.attributes.get("duration_minutes") or (context.distance_km / air.speed_kmh * 60))
        flight = RouteSegment(
            mode="flight",
            provider=offer.provider,
            origin=f"{context.origin} airport",
            destination=f"{context.destination} airport",
            duration_minutes=minutes + air.overhead_minutes,
            cost=_money(offer.price * context.travelers),
        )
        return _plan(f"offer:{offer.offer_id}", self._airport_access(context, flight), reliability=air.reliability)

    # -- building blocks --------------------------------------------------------

    def _plan_for(self, profile: ModeProfile, context: LegContext, *, strategy: str) -> RoutePlan:
        if profile.mode == "flight":
            flight = self._segment(
                profile,
                context.distance_km,
                context.travelers,
                f"{context.origin} airport",
                f"{context.destination} airport",
            )
            return _plan(strategy, self._airport_access(context, flight), reliability=profile.reliability)
        segment = self._segment(profile, context.distance_km, context.travelers, context.origin, context.destination)
        return _plan(strategy, [segment], reliability=profile.reliability)

    def _airport_access(self, context: LegContext, flight: RouteSegment) -> list[RouteSegment]:
        access = next((p for p in self.modes if p.mode == "train"), None) or next(
            (p for p in self.modes if p.mode == "taxi"), None
        )
        if access is None:
            return [flight]
        return [
            self._segment(access, _AIRPORT_ACCESS_KM, context.travelers, context.origin, flight.origin, direct=True),
            flight,
            self._segment(
                access, _AIRPORT_ACCESS_KM, context.travelers, flight.destination, context.destination, direct=True
            ),
        ]

    def _segment(
        self,
        profile: ModeProfile,
        distance_km: float,
        travelers: int,
        origin: str,
        destination: str,
        *,
        direct: bool = False,
    ) -> RouteSegment:
        travelled = distance_km if direct or profile.mode == "flight" else distance_km * ROAD_FACTOR
        minutes = profile.overhead_minutes + travelled / profile.speed_kmh * 60
        fare = profile.base_cost + profile.cost_per_km * Decimal(str(round(travelled, 3)))
        units = math.ceil(travelers / 4) if profile.per_vehicle else travelers
        return RouteSegment(
            mode=profile.mode,
            provider=profile.provider,
            origin=origin,
            destination=destination,
            duration_minutes=int(round(minutes)),
            cost=_money(fare * units),
        )


def _plan(strategy: str, segments: list[RouteSegment], *, reliability: float) -> RoutePlan:
    transfers = len(segments) - 1
    walking = sum(s.duration_minutes for s in segments if s.mode == "walking")
    convenience = 100 - 15 * transfers - 0.5 * walking
    return RoutePlan(
        strategy=strategy,
        segments=segments,
        total_minutes=sum(s.duration_minutes for s in segments),
        total_cost=sum((s.cost for s in segments), Decimal("0")),
        reliability=max(0.0, min(100.0, reliability - TRANSFER_RELIABILITY_PENALTY * transfers)),
        convenience=max(0.0, min(100.0, convenience)),
        transfers=transfers,
    )


def _relabel(plan: RoutePlan, strategy: str) -> RoutePlan:
    return plan.model_copy(update={"strategy": strategy})


def _signature(plan: RoutePlan) -> tuple[tuple[str, str], ...]:
    return tuple((segment.mode, segment.provider) for segment in plan.segments)


def _add_unique(plans: list[RoutePlan], seen: set[tuple[tuple[str, str], ...]], plan: RoutePlan) -> None:
    signature = _signature(plan)
    if signature in seen:
        return
    seen.add(signature)
    plans.append(plan)


def _pick_backup(primary: RoutePlan, ranked: list[RoutePlan]) -> RoutePlan | None:
    for plan in ranked:
        if plan.main_mode != primary.main_mode:
            return plan
    for plan in ranked:
        if plan.differs_from(primary):
            return plan
    return None


def _lower_is_better(value: float, values: list[float]) -> float:
    low, high = min(values), max(values)
    if high == low:
        return 1.0
    return 1 - (value - low) / (high - low)


def _money(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
