"""Structured data contracts for the trip brief, offers and conversational turns."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


SlotName = Literal[
    "destination",
    "origin",
    "date_range",
    "travelers",
    "budget",
    "style",
    "preferences",
]
SlotStatus = Literal["empty", "filled", "pending_clarification", "confirmed", "relock_pending"]
ConstraintKind = Literal["hard", "soft"]
ConstraintSource = Literal["explicit", "inferred", "default"]
TripPhase = Literal["collecting", "ready_to_plan", "plan_proposed", "plan_confirmed", "archived"]
Domain = Literal["hotels", "activities", "restaurants", "flights"]
TravelStyle = Literal["budget", "mid-range", "luxury", "mixed"]
GroupType = Literal["solo", "couple", "family", "friends", "business", "group"]
ConditionCode = Literal[
    "extraction_ambiguous",
    "pending_clarification",
    "no_feasible_accommodation",
    "duration_insufficient",
    "single_route_risk",
    "provider_timeout",
    "provider_error",
    "activities_out_of_radius",
    "persistence_unavailable",
    "unknown_destination",
]

SLOT_NAMES: tuple[str, ...] = (
    "destination",
    "origin",
    "date_range",
    "travelers",
    "budget",
    "style",
    "preferences",
)
PENDING_CURRENCY = "PENDING"


class DestinationValue(BaseModel):
    type: Literal["country", "city", "multi-city"]
    primary: str
    country_code: str | None = None
    detected_cities: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _multi_city_needs_cities(self) -> "DestinationValue":
        if self.type == "multi-city" and len(self.detected_cities) < 2:
            raise ValueError("multi-city destination requires at least two detected cities")
        return self


class OriginValue(BaseModel):
    name: str
    country_code: str | None = None


class DateRangeValue(BaseModel):
    """Trip dates. `duration` counts trip days, each day being one planned night."""

    start: dt.date | None = None
    end: dt.date | None = None
    duration: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _consistent(self) -> "DateRangeValue":
        if self.start is not None and self.end is not None:
            if self.end < self.start:
                raise ValueError("end date is before start date")
            span = (self.end - self.start).days + 1
            if self.duration is None:
                self.duration = span
            elif self.duration != span:
                raise ValueError(
                    f"duration {self.duration} does not match {self.start.isoformat()}..{self.end.isoformat()}"
                )
        if self.duration is None:
            raise ValueError("date range needs a duration or both start and end")
        return self


class TravelersValue(BaseModel):
    adults: int = Field(ge=1)
    children: int = Field(default=0, ge=0)
    group_type: GroupType = "solo"


class BudgetValue(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=7)
    scope: Literal["total", "per_person"] = "total"

    @property
    def currency_pending(self) -> bool:
        return self.currency == PENDING_CURRENCY


class PreferencesValue(BaseModel):
    accommodation_type: str | None = None
    dietary: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)


class HistoryEntry(BaseModel):
    value: Any
    timestamp: dt.datetime
    reason: str


class PendingChange(BaseModel):
    """Candidate waiting for a fresh confirmation before replacing a locked value."""

    value: Any
    confidence: int = Field(ge=0, le=100)
    source: ConstraintSource
    evidence: str = ""


class Constraint(BaseModel):
    value: Any = None
    kind: ConstraintKind = "soft"
    confidence: int = Field(default=0, ge=0, le=100)
    source: ConstraintSource = "default"
    locked_at: dt.datetime | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    status: SlotStatus = "empty"
    pending: PendingChange | None = None


class ClarificationOption(BaseModel):
    label: str
    value: Any
    confidence: int = Field(ge=0, le=100)


class Clarification(BaseModel):
    slot: SlotName
    question: str
    options: list[ClarificationOption] = Field(min_length=2)


class TripBrief(BaseModel):
    trip_id: str
    user_id: str | None = None
    version: int = 0
    phase: TripPhase = "collecting"
    slots: dict[str, Constraint] = Field(
        default_factory=lambda: {name: Constraint() for name in SLOT_NAMES}
    )
    clarification: Clarification | None = None
    stale_domains: list[str] = Field(default_factory=list)
    turn_counter: int = 0
    proposed_plan: dict[str, Any] | None = None
    created_at: dt.datetime | None = None
    archived_at: dt.datetime | None = None

    def slot(self, name: str) -> Constraint:
        return self.slots[name]


class Offer(BaseModel):
    offer_id: str
    domain: Domain
    provider: str
    name: str
    city: str | None = None
    lat: float | None = None
    lon: float | None = None
    price: Decimal = Field(ge=0)
    rating: float | None = Field(default=None, ge=0, le=5)
    score: float = Field(default=0.0, ge=0, le=100)
    tags: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)


class OfferSet(BaseModel):
    fingerprint: str
    domain: Domain
    params: dict[str, Any]
    offers: list[Offer] = Field(default_factory=list)
    fetched_at: dt.datetime
    failures: list[str] = Field(default_factory=list)


class PlanCondition(BaseModel):
    """Structured, user-facing data problem. Never raised; always returned."""

    code: ConditionCode
    message: str
    suggestion: str | None = None
    slot: SlotName | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class TurnToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    trip_id: str
    counter: int = Field(ge=1)
    timestamp: dt.datetime

    @property
    def key(self) -> str:
        return f"{self.trip_id}:{self.counter}:{self.timestamp.isoformat()}"


class TurnRequest(BaseModel):
    trip_id: str = Field(min_length=1)
    message: str
    user_id: str | None = None
    token: TurnToken | None = None


class RouteSegment(BaseModel):
    mode: str
    provider: str
    origin: str
    destination: str
    duration_minutes: int = Field(ge=0)
    cost: Decimal = Field(ge=0)


class RoutePlan(BaseModel):
    strategy: str
    segments: list[RouteSegment] = Field(min_length=1)
    total_minutes: int = Field(ge=0)
    total_cost: Decimal = Field(ge=0)
    reliability: float = Field(ge=0, le=100)
    convenience: float = Field(ge=0, le=100)
    transfers: int = Field(default=0, ge=0)
    score: float = 0.0

    @property
    def main_mode(self) -> str:
        return max(self.segments, key=lambda segment: segment.duration_minutes).mode

    @property
    def providers(self) -> set[str]:
        return {segment.provider for segment in self.segments}

    def differs_from(self, other: "RoutePlan") -> bool:
        modes = [segment.mode for segment in self.segments]
        other_modes = [segment.mode for segment in other.segments]
        return modes != other_modes or self.providers != other.providers


class RouteLeg(BaseModel):
    origin: str
    destination: str
    depart: dt.date | None = None
    arrive_by: dt.datetime | None = None
    distance_km: float = Field(ge=0)
    primary: RoutePlan
    backup: RoutePlan | None = None
    single_route_risk: bool = False

    @model_validator(mode="after")
    def _two_routes(self) -> "RouteLeg":
        if self.backup is None and not self.single_route_risk:
            raise ValueError("a leg without a backup route must be flagged single_route_risk")
        if self.backup is not None and not self.backup.differs_from(self.primary):
            raise ValueError("backup route must differ from primary in mode or provider")
        return self


class ScheduledItem(BaseModel):
    kind: Literal["activity", "meal", "check_in", "check_out", "transfer"]
    title: str
    category: Literal["accommodation", "activities", "food", "transport"]
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    offer_id: str | None = None
    distance_km: float | None = None
    tags: list[str] = Field(default_factory=list)


DayType = Literal["arrival", "full", "travel", "departure", "single"]
DaySlot = Literal["morning", "afternoon", "evening"]


class ItineraryDay(BaseModel):
    day_number: int = Field(ge=1)
    date: dt.date | None = None
    city: str
    day_type: DayType
    slots: dict[DaySlot, ScheduledItem] = Field(default_factory=dict)
    logistics: list[ScheduledItem] = Field(default_factory=list)
    accommodation_id: str | None = None
    radius_km: float = 8.0
    flags: list[str] = Field(default_factory=list)
    costs_by_category: dict[str, Decimal] = Field(default_factory=dict)
    total_cost: Decimal = Decimal("0")


class BookingChecklistItem(BaseModel):
    item: str
    category: Literal["accommodation", "transport", "activities"]
    priority: Literal["urgent", "important", "optional"]
    deadline: dt.date | None = None
    estimated_cost: Decimal = Field(default=Decimal("0"), ge=0)
    city: str | None = None


class ProposedPlan(BaseModel):
    plan_id: str
    trip_id: str
    status: Literal["proposed", "infeasible"]
    brief_version: int
    based_on: dict[str, str]
    currency: str
    budget: dict[str, Any] = Field(default_factory=dict)
    risk_level: Literal["low", "medium", "high"] = "low"
    sequence: list[str] = Field(default_factory=list)
    nights: dict[str, int] = Field(default_factory=dict)
    efficiency: float = Field(default=100.0, ge=0, le=100)
    accommodations: dict[str, Offer] = Field(default_factory=dict)
    transfers: list[RouteLeg] = Field(default_factory=list)
    days: list[ItineraryDay] = Field(default_factory=list)
    totals: dict[str, Decimal] = Field(default_factory=dict)
    checklist: list[BookingChecklistItem] = Field(default_factory=list)
    relaxation_steps: list[dict[str, Any]] = Field(default_factory=list)
    conditions: list[PlanCondition] = Field(default_factory=list)
    searches: list[str] = Field(default_factory=list)
    created_at: dt.datetime | None = None


class TurnResponse(BaseModel):
    trip_id: str
    turn: int
    reply: str
    phase: TripPhase
    slots_updated: list[str] = Field(default_factory=list)
    next_expected_slot: str | None = None
    searches_triggered: list[str] = Field(default_factory=list)
    proposed_plan: ProposedPlan | None = None
    conditions: list[PlanCondition] = Field(default_factory=list)
    replayed: bool = False
    read_only: bool = False
