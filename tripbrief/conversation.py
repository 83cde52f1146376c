"""Turn processor: ordered, idempotent conversational turns over one trip brief."""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
import threading
from typing import Callable

from tripbrief import telemetry
from tripbrief.brief import (
    OPTIONAL_SLOTS,
    REQUIRED_SLOTS,
    archive_trip,
    missing_required,
    new_brief,
    slot_hashes,
    slot_value,
)
from tripbrief.budget import BudgetController
from tripbrief.cache import KeyedLocks, OfferCache, RateLimiter
from tripbrief.contracts import (
    PlanCondition,
    ProposedPlan,
    TripBrief,
    TurnRequest,
    TurnResponse,
)
from tripbrief.extractor import EntityExtractor, NoCandidate, classify_reply
from tripbrief.itinerary import ItineraryGenerator
from tripbrief.llm_extractor import DatapizzaGeminiCandidateExtractor
from tripbrief.persistence import InMemoryTripStore, PersistenceUnavailableError, TripStore
from tripbrief.places import PlaceCatalog
from tripbrief.planning import PlanningPass
from tripbrief.providers import FixtureProvider, ProviderAdapter, ProviderGateway
from tripbrief.settings import PlannerSettings
from tripbrief.state_machine import SlotStateMachine, TransitionResult
from tripbrief.transfer import TransferComposer


OUTAGE_REPLY = (
    "I can't reach your saved trip right now, so I haven't changed anything. "
    "Please try again in a moment."
)
PLANNING_OUTAGE_REPLY = (
    "I saved your trip details, but I couldn't reach trip storage to finish the plan. "
    "Send any message and I'll try planning again."
)
ARCHIVED_REPLY = "This trip is archived. You can read it, but it can no longer be changed."


class TurnProcessor:
    """Runs one user turn end to end.

    Turns for the same trip are serialised by a per-trip lock; different trips
    run in parallel. The planning pass runs outside the lock and its result is
    only committed if the slots it was built from are unchanged.
    """

    def __init__(
        self,
        store: TripStore,
        extractor: EntityExtractor,
        state_machine: SlotStateMachine,
        planner: PlanningPass,
        *,
        clock: Callable[[], datetime] | None = None,
        max_active_trips: int = 1024,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._state_machine = state_machine
        self._planner = planner
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._trip_locks = KeyedLocks()
        self._controllers: OrderedDict[str, BudgetController] = OrderedDict()
        self._controllers_guard = threading.Lock()
        self._max_controllers = max_active_trips

    def handle(self, request: TurnRequest) -> TurnResponse:
        with telemetry.start_span("turn.process", {"tripbrief.trip_id": request.trip_id}) as span:
            try:
                response = self._handle(request)
            except PersistenceUnavailableError:
                response = _read_only(request.trip_id, OUTAGE_REPLY, outage=True)
            telemetry.set_attributes(
                span,
                phase=response.phase,
                replayed=response.replayed,
                read_only=response.read_only,
                slots_updated=response.slots_updated,
            )
            return response

    def archive(self, trip_id: str) -> TripBrief:
        with self._trip_locks.hold(trip_id):
            brief, _ = self._store.load_trip_state(trip_id)
            if brief is None:
                raise KeyError(f"unknown trip '{trip_id}'")
            archived = archive_trip(brief, now=self._clock())
            self._store.save_trip_state(archived)
            self._store.append_decision_log(trip_id, "trip_archived", "Trip archived.", {"version": archived.version})
            with self._controllers_guard:
                self._controllers.pop(trip_id, None)
            return archived

    def budget_controller(self, trip_id: str) -> BudgetController | None:
        """The trip's live controller, rebuilt from the stored brief if it was dropped."""
        controller = self._controllers.get(trip_id)
        if controller is None:
            brief, _ = self._store.load_trip_state(trip_id)
            controller = controller_for(brief) if brief is not None else None
            if controller is not None:
                self._remember_controller(trip_id, controller)
        return controller

    def brief(self, trip_id: str) -> TripBrief | None:
        brief, _ = self._store.load_trip_state(trip_id)
        return brief

    def close(self) -> None:
        """Shut down the provider worker pool."""
        self._planner.close()

    def _handle(self, request: TurnRequest) -> TurnResponse:
        trip_id = request.trip_id
        with self._trip_locks.hold(trip_id):
            brief, _ = self._store.load_trip_state(trip_id)
            if brief is None:
                brief = new_brief(trip_id, user_id=request.user_id, now=self._clock())

            if request.token is not None and request.token.counter <= brief.turn_counter:
                return self._replay(brief, request.token.counter)
            if brief.phase == "archived":
                return _read_only(trip_id, ARCHIVED_REPLY, phase="archived", turn=brief.turn_counter)

            counter = request.token.counter if request.token is not None else brief.turn_counter + 1
            result = self._apply_message(brief, request.message)
            self._track_budget(brief, result)
            brief.turn_counter = counter
            plan_due = brief.phase == "ready_to_plan" and result.question is None and not result.plan_rejected
            self._store.save_trip_state(brief)
            snapshot = brief.model_copy(deep=True)

        plan: ProposedPlan | None = None
        discarded = False
        interrupted = False
        if plan_due:
            # The slot changes above are already saved; an outage from here on
            # only loses the plan, which the next turn rebuilds.
            try:
                plan = self._planner.run(snapshot)
                with self._trip_locks.hold(trip_id):
                    discarded = not self._commit_plan(trip_id, plan)
                    current, _ = self._store.load_trip_state(trip_id)
                    if current is not None:
                        brief = current
            except PersistenceUnavailableError:
                plan = None
                interrupted = True

        kept = plan if plan is not None and not discarded else None
        conditions = [*result.conditions, *(kept.conditions if kept is not None else [])]
        if interrupted:
            conditions.append(_outage_condition())
        response = TurnResponse(
            trip_id=trip_id,
            turn=counter,
            reply=PLANNING_OUTAGE_REPLY if interrupted else render_reply(brief, result, kept, discarded=discarded),
            phase=brief.phase,
            slots_updated=[*result.slots_updated, *result.confirmed, *result.relocked],
            next_expected_slot=result.next_slot,
            searches_triggered=list(kept.searches) if kept is not None else [],
            proposed_plan=kept,
            conditions=conditions,
        )
        try:
            self._store.save_turn_response(trip_id, counter, response.model_dump(mode="json"))
        except PersistenceUnavailableError:
            if not interrupted:
                response.conditions.append(_outage_condition())
        return response

    def _apply_message(self, brief: TripBrief, message: str) -> TransitionResult:
        resolved = None
        with telemetry.start_span("turn.extract", {"tripbrief.trip_id": brief.trip_id}) as span:
            if brief.clarification is not None:
                choice = self._extractor.resolve_clarification(message, brief.clarification)
                resolved = None if isinstance(choice, NoCandidate) else choice
            candidates = self._extractor.extract(message, brief, expected_slot=expected_slot(brief))
            if resolved is not None:
                candidates = [item for item in candidates if item.slot != resolved.slot]
            reply = classify_reply(message, has_content=bool(candidates))
            telemetry.set_attributes(span, candidates=len(candidates), reply=reply)
        return self._state_machine.apply(brief, reply=reply, candidates=candidates, resolved=resolved)

    def _commit_plan(self, trip_id: str, plan: ProposedPlan) -> bool:
        """Store `plan` unless a newer turn changed the slots it was built from."""
        brief, _ = self._store.load_trip_state(trip_id)
        current = slot_hashes(brief) if brief is not None else {}
        if brief is None or current != plan.based_on or brief.phase != "ready_to_plan":
            self._store.append_decision_log(
                trip_id,
                "stale_plan_discarded",
                "Discarded a plan built from slots that changed while it was running.",
                {"plan_id": plan.plan_id, "brief_version": plan.brief_version},
            )
            return False

        controller = self._controllers.get(trip_id)
        if plan.status == "proposed":
            brief.proposed_plan = plan.model_dump(mode="json")
            brief.phase = "plan_proposed"
            brief.stale_domains = []
            if controller is not None:
                controller.release()
                _charge(controller, plan.totals, commit=False)
        brief.version += 1
        self._store.save_trip_state(brief)
        self._store.append_decision_log(
            trip_id,
            "plan_proposed" if plan.status == "proposed" else "plan_infeasible",
            f"Plan {plan.plan_id} built from version {plan.brief_version}.",
            {"plan_id": plan.plan_id, "conditions": [condition.code for condition in plan.conditions]},
        )
        return True

    def _track_budget(self, brief: TripBrief, result: TransitionResult) -> None:
        trip_id = brief.trip_id
        controller = self._controllers.get(trip_id)
        if controller is None:
            controller = controller_for(brief)
            if controller is not None:
                self._remember_controller(trip_id, controller)
            return
        if not _budget_confirmed(brief):
            return
        if result.budget_recompute:
            budget = slot_value(brief, "budget")
            travelers = slot_value(brief, "travelers")
            adults = travelers.adults if travelers else 1
            total = budget.amount * adults if budget.scope == "per_person" else budget.amount
            controller.currency = budget.currency
            controller.recompute(total=total, nights=slot_value(brief, "date_range").duration)
        if result.plan_confirmed and brief.proposed_plan:
            controller.release()
            _charge(controller, brief.proposed_plan.get("totals", {}), commit=True)

    def _remember_controller(self, trip_id: str, controller: BudgetController) -> None:
        with self._controllers_guard:
            self._controllers[trip_id] = controller
            self._controllers.move_to_end(trip_id)
            while len(self._controllers) > self._max_controllers:
                self._controllers.popitem(last=False)

    def _replay(self, brief: TripBrief, counter: int) -> TurnResponse:
        stored = self._store.get_turn_response(brief.trip_id, counter)
        if stored is None:
            return TurnResponse(
                trip_id=brief.trip_id,
                turn=counter,
                reply="That message was already handled.",
                phase=brief.phase,
                replayed=True,
            )
        return TurnResponse.model_validate(stored).model_copy(update={"replayed": True})


def controller_for(brief: TripBrief) -> BudgetController | None:
    """Budget controller for a brief whose budget, dates and travelers are locked.

    A proposed plan's totals are reserved and a confirmed plan's totals committed.
    """
    if not _budget_confirmed(brief):
        return None
    budget = slot_value(brief, "budget")
    travelers = slot_value(brief, "travelers")
    controller = BudgetController.from_budget(
        budget,
        nights=slot_value(brief, "date_range").duration,
        adults=travelers.adults if travelers else 1,
    )
    if brief.proposed_plan and brief.phase in {"plan_proposed", "plan_confirmed"}:
        _charge(controller, brief.proposed_plan.get("totals", {}), commit=brief.phase == "plan_confirmed")
    return controller


def _budget_confirmed(brief: TripBrief) -> bool:
    if any(brief.slot(name).locked_at is None for name in ("budget", "date_range", "travelers")):
        return False
    budget = slot_value(brief, "budget")
    return budget is not None and not budget.currency_pending


def _charge(controller: BudgetController, totals: dict, *, commit: bool) -> None:
    for category in ("accommodation", "activities", "food"):
        amount = Decimal(str(totals.get(category, "0")))
        if commit:
            controller.commit(category, amount)
        else:
            controller.reserve(category, amount)


def expected_slot(brief: TripBrief) -> str | None:
    """The slot the last question asked about, used to read bare answers."""
    if brief.clarification is not None:
        return brief.clarification.slot
    for name in (*REQUIRED_SLOTS, *OPTIONAL_SLOTS):
        if brief.slot(name).status == "pending_clarification":
            return name
    missing = missing_required(brief)
    return missing[0] if missing else None


def render_reply(
    brief: TripBrief,
    result: TransitionResult,
    plan: ProposedPlan | None,
    *,
    discarded: bool = False,
) -> str:
    if plan is not None and plan.status == "proposed":
        return _plan_summary(plan)
    if plan is not None:
        lines = ["I couldn't build a plan with the current details."]
        lines.extend(_condition_line(condition) for condition in plan.conditions)
        return "\n".join(lines)
    if discarded:
        return "Your trip changed while I was planning, so I'll rebuild the plan with the new details."
    if result.question:
        notes = [condition.message for condition in result.conditions if condition.message != result.question]
        return " ".join([*notes, result.question]) if notes else result.question
    if result.plan_confirmed:
        return "Great, the plan is confirmed. Check the booking list for what to reserve first."
    if result.plan_rejected:
        return "No problem. Tell me what to change and I'll plan again."
    if brief.phase == "plan_proposed":
        return "Shall I lock in the proposed plan?"
    return "Noted."


def _plan_summary(plan: ProposedPlan) -> str:
    budget = plan.budget
    lines = [
        f"Here's a {len(plan.days)}-day plan: {' -> '.join(plan.sequence)}.",
        (
            f"Budget {budget.get('total')} {plan.currency}: accommodation {budget.get('accommodation')}, "
            f"activities {budget.get('activities')}, food {budget.get('food')} "
            f"(up to {budget.get('per_night_ceiling')} per night)."
        ),
    ]
    for city, offer in plan.accommodations.items():
        lines.append(f"Stay in {city}: {offer.name} at {offer.price} {plan.currency}/night.")
    for condition in plan.conditions:
        lines.append(_condition_line(condition))
    lines.append(f"Estimated total {plan.totals.get('total', Decimal('0'))} {plan.currency} (risk: {plan.risk_level}).")
    lines.append("Shall I lock this plan in?")
    return "\n".join(lines)


def _condition_line(condition: PlanCondition) -> str:
    if condition.suggestion:
        return f"- {condition.message} {condition.suggestion}"
    return f"- {condition.message}"


def _outage_condition() -> PlanCondition:
    return PlanCondition(
        code="persistence_unavailable",
        message="Trip storage is unavailable.",
        suggestion="Try again shortly.",
    )


def _read_only(
    trip_id: str,
    reply: str,
    *,
    phase: str = "collecting",
    turn: int = 0,
    outage: bool = False,
) -> TurnResponse:
    return TurnResponse(
        trip_id=trip_id,
        turn=turn,
        reply=reply,
        phase=phase,
        conditions=[_outage_condition()] if outage else [],
        read_only=True,
    )


def build_processor(
    settings: PlannerSettings | None = None,
    *,
    store: TripStore | None = None,
    adapters: list[ProviderAdapter] | None = None,
    cache: OfferCache | None = None,
    clock: Callable[[], datetime] | None = None,
) -> TurnProcessor:
    """Wire the default components from settings."""
    settings = settings or PlannerSettings()
    clock = clock or (lambda: datetime.now(timezone.utc))
    catalog = PlaceCatalog()
    store = store or InMemoryTripStore(clock=clock)
    cache = cache or OfferCache(max_size=settings.cache_max_size, ttl_seconds=settings.cache_ttl_seconds)
    adapters = adapters if adapters is not None else [FixtureProvider(catalog=catalog)]
    gateway = ProviderGateway(
        adapters,
        cache,
        timeout_seconds=settings.provider_timeout_seconds,
        rate_limiters={adapter.name: RateLimiter(rate_per_second=20.0, capacity=40.0) for adapter in adapters},
        clock=clock,
    )
    fallback = DatapizzaGeminiCandidateExtractor() if settings.llm_fallback else None
    extractor = EntityExtractor(
        catalog,
        min_confidence=settings.min_confidence,
        ambiguity_confidence=settings.ambiguity_confidence,
        fallback=fallback,
        timezone_name=settings.timezone,
        clock=clock,
    )
    planner = PlanningPass(
        store,
        gateway,
        catalog=catalog,
        composer=TransferComposer(weights=settings.route_weights),
        generator=ItineraryGenerator(activity_radius_km=settings.activity_radius_km),
        clock=clock,
    )
    return TurnProcessor(store, extractor, SlotStateMachine(store, cache, clock=clock), planner, clock=clock)
