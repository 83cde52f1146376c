from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

from tripbrief.brief import slot_value
from tripbrief.cache import OfferCache
from tripbrief.contracts import ProposedPlan, TripBrief, TurnRequest, TurnToken
from tripbrief.conversation import (
    OUTAGE_REPLY,
    PLANNING_OUTAGE_REPLY,
    TurnProcessor,
    build_processor,
    expected_slot,
)
from tripbrief.extractor import EntityExtractor
from tripbrief.persistence import InMemoryTripStore, PersistenceUnavailableError
from tripbrief.planning import PlanningPass
from tripbrief.providers import FixtureProvider, ProviderGateway
from tripbrief.state_machine import SlotStateMachine


FIXED_NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)
OPENING = "I'd like to visit Italy from 2027-03-01 to 2027-03-07, just me, budget £2000, mid-range please"
REQUIRED = ["destination", "date_range", "travelers", "budget", "style"]


def _processor() -> tuple[TurnProcessor, InMemoryTripStore]:
    store = InMemoryTripStore(clock=lambda: FIXED_NOW)
    return build_processor(store=store, clock=lambda: FIXED_NOW), store


def _turn(processor: TurnProcessor, message: str, trip_id: str = "trip-1", counter: int | None = None):  # type: ignore[no-untyped-def]
    token = TurnToken(trip_id=trip_id, counter=counter, timestamp=FIXED_NOW) if counter is not None else None
    return processor.handle(TurnRequest(trip_id=trip_id, message=message, token=token))


def _stored(store: InMemoryTripStore, trip_id: str = "trip-1") -> TripBrief:
    brief, _ = store.load_trip_state(trip_id)
    assert brief is not None
    return brief


def test_full_conversation_to_confirmed_plan() -> None:
    processor, store = _processor()

    first = _turn(processor, OPENING)
    assert first.turn == 1
    assert first.phase == "collecting"
    assert sorted(first.slots_updated) == sorted(REQUIRED)
    assert first.reply.startswith("Got it.")
    assert first.proposed_plan is None

    second = _turn(processor, "yes")
    assert second.phase == "plan_proposed"
    assert second.proposed_plan is not None
    assert second.proposed_plan.sequence == ["Rome"]
    assert second.searches_triggered == ["hotels:rome", "activities:rome", "restaurants:rome"]
    assert second.reply.startswith("Here's a 7-day plan: Rome.")
    assert second.reply.endswith("Shall I lock this plan in?")
    assert store.decision_log("trip-1", "plan_proposed")

    third = _turn(processor, "yes")
    assert third.phase == "plan_confirmed"
    assert third.proposed_plan is None
    totals = second.proposed_plan.totals
    controller = processor.budget_controller("trip-1")
    assert controller is not None
    assert controller.total == Decimal("2000")
    assert controller.spent() == sum(totals[category] for category in ("accommodation", "activities", "food"))


def test_bare_amount_asks_for_currency() -> None:
    processor, store = _processor()

    response = _turn(processor, "my budget is around 2500")

    assert "Which currency is that 2500 in?" in response.reply
    assert "pending_clarification" in [condition.code for condition in response.conditions]
    brief = _stored(store)
    assert brief.slot("budget").status == "pending_clarification"
    assert expected_slot(brief) == "budget"

    _turn(processor, "pounds")

    budget = _stored(store).slot("budget")
    assert budget.status == "filled"
    assert slot_value(_stored(store), "budget").currency == "GBP"


def test_repeated_turn_token_replays_stored_response() -> None:
    processor, store = _processor()
    first = _turn(processor, OPENING, counter=1)
    version = _stored(store).version

    again = _turn(processor, "no, make it Paris", counter=1)

    assert again.replayed is True
    assert again.reply == first.reply
    assert again.turn == 1
    assert _stored(store).version == version
    assert _stored(store).turn_counter == 1


def test_turns_on_one_trip_are_serialised() -> None:
    processor, store = _processor()

    with ThreadPoolExecutor(max_workers=5) as pool:
        responses = list(pool.map(lambda _: _turn(processor, "hello there"), range(5)))

    assert sorted(response.turn for response in responses) == [1, 2, 3, 4, 5]
    assert _stored(store).turn_counter == 5


def test_storage_outage_is_read_only() -> None:
    processor, store = _processor()
    store.available = False

    response = _turn(processor, OPENING)

    assert response.read_only is True
    assert response.reply == OUTAGE_REPLY
    assert [condition.code for condition in response.conditions] == ["persistence_unavailable"]

    store.available = True
    assert _turn(processor, OPENING).turn == 1


def test_archived_trip_refuses_changes() -> None:
    processor, store = _processor()
    _turn(processor, OPENING)
    processor.archive("trip-1")

    response = _turn(processor, "actually make it Paris")

    assert response.read_only is True
    assert response.phase == "archived"
    assert slot_value(_stored(store), "destination").primary == "Italy"
    assert store.decision_log("trip-1", "trip_archived")


def test_rejected_plan_waits_for_changes() -> None:
    processor, _ = _processor()
    _turn(processor, OPENING)
    _turn(processor, "yes")

    response = _turn(processor, "no")

    assert response.phase == "ready_to_plan"
    assert response.proposed_plan is None
    assert response.searches_triggered == []


class SlotChangingPlanner:
    """Simulates a newer turn landing while the planning pass runs."""

    def __init__(self, inner: PlanningPass, store: InMemoryTripStore) -> None:
        self.inner = inner
        self.store = store

    def run(self, brief: TripBrief) -> ProposedPlan:
        plan = self.inner.run(brief)
        current, _ = self.store.load_trip_state(brief.trip_id)
        current.slot("style").value = "luxury"
        self.store.save_trip_state(current)
        return plan


def test_plan_built_from_changed_slots_is_discarded() -> None:
    store = InMemoryTripStore(clock=lambda: FIXED_NOW)
    cache = OfferCache()
    gateway = ProviderGateway([FixtureProvider()], cache, clock=lambda: FIXED_NOW)
    planner = SlotChangingPlanner(PlanningPass(store, gateway, clock=lambda: FIXED_NOW), store)
    processor = TurnProcessor(
        store,
        EntityExtractor(clock=lambda: FIXED_NOW),
        SlotStateMachine(store, cache, clock=lambda: FIXED_NOW),
        planner,  # type: ignore[arg-type]
        clock=lambda: FIXED_NOW,
    )
    try:
        _turn(processor, OPENING)
        response = _turn(processor, "yes")
    finally:
        gateway.close()

    assert response.proposed_plan is None
    assert response.phase == "ready_to_plan"
    assert response.reply.startswith("Your trip changed while I was planning")
    assert store.decision_log("trip-1", "stale_plan_discarded")
    assert not store.decision_log("trip-1", "plan_proposed")
    assert _stored(store).proposed_plan is None


class SearchLogOutageStore(InMemoryTripStore):
    """Trip state saves fine, but recording searches fails."""

    def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(**kwargs)
        self.search_log_down = True

    def create_search_request(self, trip_id, domain, params):  # type: ignore[no-untyped-def]
        if self.search_log_down:
            raise PersistenceUnavailableError("search log is unavailable")
        return super().create_search_request(trip_id, domain, params)


def test_outage_while_planning_keeps_confirmed_slots_and_replays() -> None:
    store = SearchLogOutageStore(clock=lambda: FIXED_NOW)
    processor = build_processor(store=store, clock=lambda: FIXED_NOW)
    _turn(processor, OPENING, counter=1)

    response = _turn(processor, "yes", counter=2)

    assert response.read_only is False
    assert response.reply == PLANNING_OUTAGE_REPLY
    assert response.phase == "ready_to_plan"
    assert response.proposed_plan is None
    assert "persistence_unavailable" in [condition.code for condition in response.conditions]
    brief = _stored(store)
    assert brief.turn_counter == 2
    assert all(brief.slot(name).locked_at is not None for name in REQUIRED)

    again = _turn(processor, "yes", counter=2)
    assert again.replayed is True
    assert again.reply == PLANNING_OUTAGE_REPLY

    store.search_log_down = False
    retry = _turn(processor, "hello", counter=3)
    assert retry.phase == "plan_proposed"
    assert retry.proposed_plan is not None


def test_bare_city_after_destination_fills_origin() -> None:
    processor, store = _processor()
    _turn(processor, "I would like to go to Japan")
    _turn(processor, "yes")

    response = _turn(processor, "london")

    brief = _stored(store)
    assert "origin" in response.slots_updated
    assert brief.slot("destination").status == "confirmed"
    assert brief.slot("destination").pending is None
    assert slot_value(brief, "destination").primary == "Japan"
    assert brief.slot("origin").status == "filled"
    assert slot_value(brief, "origin").name == "London"


def test_leading_no_with_an_answer_is_not_a_denial() -> None:
    processor, store = _processor()
    _turn(processor, "I would like to go to Japan")
    _turn(processor, "yes")

    _turn(processor, "No kids, two adults")

    brief = _stored(store)
    assert brief.slot("destination").status == "confirmed"
    assert slot_value(brief, "travelers").adults == 2


def test_idle_trips_release_locks_and_rebuild_budget_controllers() -> None:
    store = InMemoryTripStore(clock=lambda: FIXED_NOW)
    cache = OfferCache()
    gateway = ProviderGateway([FixtureProvider()], cache, clock=lambda: FIXED_NOW)
    processor = TurnProcessor(
        store,
        EntityExtractor(clock=lambda: FIXED_NOW),
        SlotStateMachine(store, cache, clock=lambda: FIXED_NOW),
        PlanningPass(store, gateway, clock=lambda: FIXED_NOW),
        clock=lambda: FIXED_NOW,
        max_active_trips=1,
    )
    try:
        for trip_id in ("trip-1", "trip-2"):
            _turn(processor, OPENING, trip_id=trip_id)
            _turn(processor, "yes", trip_id=trip_id)
        _turn(processor, "yes", trip_id="trip-1")
    finally:
        processor.close()

    assert len(processor._trip_locks) == 0
    assert list(processor._controllers) == ["trip-1"]
    rebuilt = processor.budget_controller("trip-2")
    assert rebuilt is not None
    assert rebuilt.total == Decimal("2000")
    assert sum(rebuilt.committed.values(), Decimal("0")) == Decimal("0")
    assert sum(rebuilt.reserved.values()) > 0
