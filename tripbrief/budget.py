"""Budget controller: category allocation, limits, spend tracking and the accommodation relaxation ladder."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Iterable, Literal

from pydantic import BaseModel, Field

from tripbrief.contracts import BudgetValue, Offer, PlanCondition
from tripbrief.places import haversine_km


Category = Literal["accommodation", "activities", "food"]
RiskLevel = Literal["low", "medium", "high"]

CENTS = Decimal("0.01")
CATEGORY_WEIGHTS: dict[str, Decimal] = {
    "accommodation": Decimal("0.55"),
    "activities": Decimal("0.30"),
    "food": Decimal("0.15"),
}
MEAL_SHARES: dict[str, Decimal] = {
    "breakfast": Decimal("0.25"),
    "lunch": Decimal("0.35"),
    "dinner": Decimal("0.40"),
}
STYLE_MIN_RATING: dict[str, float] = {
    "budget": 3.0,
    "mid-range": 3.5,
    "luxury": 4.2,
    "mixed": 3.5,
}
CEILING_RAISE = Decimal("0.15")
STRICT_RADIUS_KM = 3.0
RADIUS_STEPS_KM: tuple[float, ...] = (5.0, 8.0)
RATING_STEP = 0.5
RATING_FLOOR = 2.5


class BudgetBreakdown(BaseModel):
    total: Decimal
    currency: str
    nights: int = Field(gt=0)
    accommodation: Decimal
    activities: Decimal
    food: Decimal
    per_night_ceiling: Decimal
    daily_limit: Decimal
    meals: dict[str, Decimal] = Field(default_factory=dict)

    @property
    def allocated(self) -> Decimal:
        return self.accommodation + self.activities + self.food


class RelaxationStep(BaseModel):
    step: int
    action: Literal["raise_ceiling", "widen_radius", "lower_rating"]
    detail: str
    ceiling: Decimal
    radius_km: float
    min_rating: float


class AccommodationSelection(BaseModel):
    offer: Offer | None = None
    nights: int
    ceiling: Decimal
    radius_km: float
    min_rating: float
    borrowed_from_activities: Decimal = Decimal("0")
    steps: list[RelaxationStep] = Field(default_factory=list)
    condition: PlanCondition | None = None


def allocate(total: Decimal, weights: dict[str, Decimal] | None = None) -> dict[str, Decimal]:
    """Split `total` by weight, rounding down to cents.

    The rounding remainder goes to the largest category so the parts always sum
    to `total` exactly.
    """
    weights = weights or CATEGORY_WEIGHTS
    parts = {name: (total * weight).quantize(CENTS, rounding=ROUND_DOWN) for name, weight in weights.items()}
    largest = max(weights, key=lambda name: weights[name])
    parts[largest] += total - sum(parts.values())
    return parts


def split_by_weight(total: Decimal, weights: dict[str, int]) -> dict[str, Decimal]:
    """Share `total` out by integer weights (e.g. nights per city), remainder to the largest."""
    denominator = sum(weights.values())
    if denominator <= 0:
        raise ValueError("weights must sum to a positive number")
    return allocate(total, {name: Decimal(weight) / Decimal(denominator) for name, weight in weights.items()})


def build_breakdown(total: Decimal, currency: str, nights: int) -> BudgetBreakdown:
    if total <= 0:
        raise ValueError("total budget must be > 0")
    if nights <= 0:
        raise ValueError("nights must be > 0")
    parts = allocate(total)
    daily_food = parts["food"] / nights
    return BudgetBreakdown(
        total=total,
        currency=currency,
        nights=nights,
        accommodation=parts["accommodation"],
        activities=parts["activities"],
        food=parts["food"],
        per_night_ceiling=(parts["accommodation"] / nights).quantize(CENTS, rounding=ROUND_DOWN),
        daily_limit=(total / nights).to_integral_value(rounding=ROUND_DOWN),
        meals={
            meal: (daily_food * share).quantize(CENTS, rounding=ROUND_DOWN)
            for meal, share in MEAL_SHARES.items()
        },
    )


@dataclass
class BudgetController:
    """Tracks one budget envelope: allocation, commitments and accommodation choice."""

    total: Decimal
    currency: str
    nights: int
    breakdown: BudgetBreakdown = field(init=False)
    committed: dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))
    reserved: dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))

    def __post_init__(self) -> None:
        self.breakdown = build_breakdown(self.total, self.currency, self.nights)

    @classmethod
    def from_budget(cls, budget: BudgetValue, *, nights: int, adults: int = 1) -> "BudgetController":
        if budget.currency_pending:
            raise ValueError("budget currency is still pending")
        total = budget.amount * adults if budget.scope == "per_person" else budget.amount
        return cls(total=total, currency=budget.currency, nights=nights)

    def recompute(self, *, total: Decimal | None = None, nights: int | None = None) -> BudgetBreakdown:
        """Re-derive the allocation after the budget or trip length changed.

        Committed and reserved spend is kept; only the envelope moves.
        """
        if total is not None:
            self.total = total
        if nights is not None:
            self.nights = nights
        self.breakdown = build_breakdown(self.total, self.currency, self.nights)
        return self.breakdown

    def split(self, nights_by_city: dict[str, int]) -> dict[str, "BudgetController"]:
        """One controller per city, each funded in proportion to its nights."""
        shares = split_by_weight(self.total, nights_by_city)
        return {
            city: BudgetController(total=shares[city], currency=self.currency, nights=nights)
            for city, nights in nights_by_city.items()
        }

    # -- spend tracking ---------------------------------------------------------

    def commit(self, category: str, amount: Decimal) -> None:
        self._check_amount(category, amount)
        self.committed[category] += amount

    def reserve(self, category: str, amount: Decimal) -> None:
        self._check_amount(category, amount)
        self.reserved[category] += amount

    def release(self, category: str | None = None) -> None:
        if category is None:
            self.reserved.clear()
        else:
            self.reserved.pop(category, None)

    def spent(self) -> Decimal:
        return sum(self.committed.values(), Decimal("0")) + sum(self.reserved.values(), Decimal("0"))

    def remaining(self, category: str) -> Decimal:
        allocated = getattr(self.breakdown, category)
        return allocated - self.committed.get(category, Decimal("0")) - self.reserved.get(category, Decimal("0"))

    @property
    def risk_level(self) -> RiskLevel:
        ratio = self.spent() / self.total
        if ratio < Decimal("0.8"):
            return "low"
        if ratio < Decimal("1"):
            return "medium"
        return "high"

    def _check_amount(self, category: str, amount: Decimal) -> None:
        if category not in CATEGORY_WEIGHTS:
            raise ValueError(f"unknown budget category '{category}'")
        if amount < 0:
            raise ValueError("amount must be >= 0")

    # -- accommodation ----------------------------------------------------------

    def select_accommodation(
        self,
        offers: Iterable[Offer],
        *,
        center: tuple[float, float],
        style: str,
        city: str | None = None,
    ) -> AccommodationSelection:
        """Pick the best hotel inside the allocation, relaxing bounds step by step.

        Ladder: raise the nightly ceiling up to 15% (funded from activities),
        widen the radius 3 -> 5 -> 8 km, lower the minimum rating by 0.5 (floor
        2.5). If nothing qualifies the selection carries a
        `no_feasible_accommodation` condition instead of an offer.
        """
        hotels = [offer for offer in offers if offer.domain == "hotels"]
        base_ceiling = self.breakdown.per_night_ceiling
        min_rating = STYLE_MIN_RATING.get(style, 3.5)
        ceiling = base_ceiling
        radius = STRICT_RADIUS_KM
        steps: list[RelaxationStep] = []

        chosen = _best_hotel(hotels, center, ceiling, radius, min_rating)
        if chosen is None:
            ceiling = (base_ceiling * (1 + CEILING_RAISE)).quantize(CENTS, rounding=ROUND_DOWN)
            steps.append(
                RelaxationStep(
                    step=1,
                    action="raise_ceiling",
                    detail=f"nightly ceiling {base_ceiling} -> {ceiling} {self.currency}, funded from activities",
                    ceiling=ceiling,
                    radius_km=radius,
                    min_rating=min_rating,
                )
            )
            chosen = _best_hotel(hotels, center, ceiling, radius, min_rating)
        for wider in RADIUS_STEPS_KM:
            if chosen is not None:
                break
            radius = wider
            steps.append(
                RelaxationStep(
                    step=2,
                    action="widen_radius",
                    detail=f"search radius widened to {wider:g} km",
                    ceiling=ceiling,
                    radius_km=radius,
                    min_rating=min_rating,
                )
            )
            chosen = _best_hotel(hotels, center, ceiling, radius, min_rating)
        if chosen is None:
            lowered = max(RATING_FLOOR, min_rating - RATING_STEP)
            if lowered < min_rating:
                min_rating = lowered
                steps.append(
                    RelaxationStep(
                        step=3,
                        action="lower_rating",
                        detail=f"minimum rating lowered to {min_rating:g}",
                        ceiling=ceiling,
                        radius_km=radius,
                        min_rating=min_rating,
                    )
                )
                chosen = _best_hotel(hotels, center, ceiling, radius, min_rating)

        selection = AccommodationSelection(
            offer=chosen,
            nights=self.nights,
            ceiling=ceiling,
            radius_km=radius,
            min_rating=min_rating,
            steps=steps,
        )
        if chosen is None:
            cheapest = min((offer.price for offer in hotels), default=None)
            suggestion = (
                f"Raise the budget to about {(cheapest * self.nights / CATEGORY_WEIGHTS['accommodation']).quantize(Decimal('1'))} "
                f"{self.currency} or shorten the stay."
                if cheapest is not None
                else "Try different dates or a nearby city."
            )
            selection.condition = PlanCondition(
                code="no_feasible_accommodation",
                message=f"No accommodation{f' in {city}' if city else ''} fits {ceiling} {self.currency} per night.",
                suggestion=suggestion,
                slot="budget",
                details={"ceiling": str(ceiling), "radius_km": radius, "min_rating": min_rating},
            )
            return selection

        overspend = max(Decimal("0"), chosen.price - base_ceiling) * self.nights
        if overspend > 0:
            self._borrow_from_activities(overspend)
            selection.borrowed_from_activities = overspend
        return selection

    def _borrow_from_activities(self, amount: Decimal) -> None:
        amount = min(amount, self.breakdown.activities)
        self.breakdown = self.breakdown.model_copy(
            update={
                "accommodation": self.breakdown.accommodation + amount,
                "activities": self.breakdown.activities - amount,
                "per_night_ceiling": ((self.breakdown.accommodation + amount) / self.nights).quantize(
                    CENTS, rounding=ROUND_DOWN
                ),
            }
        )


def _best_hotel(
    hotels: list[Offer],
    center: tuple[float, float],
    ceiling: Decimal,
    radius_km: float,
    min_rating: float,
) -> Offer | None:
    qualifying = [
        offer
        for offer in hotels
        if offer.price <= ceiling
        and (offer.rating or 0.0) >= min_rating
        and _distance(offer, center) <= radius_km
    ]
    if not qualifying:
        return None
    return min(qualifying, key=lambda offer: (-(offer.rating or 0.0), offer.price, offer.offer_id))


def _distance(offer: Offer, center: tuple[float, float]) -> float:
    if offer.lat is None or offer.lon is None:
        return float("inf")
    return haversine_km(center[0], center[1], offer.lat, offer.lon)
