"""Slot-filling state machine: the only code that mutates a TripBrief's slots.

Per-slot lifecycle::

    empty -> filled -> confirmed (locked)
    filled -> pending_clarification -> filled      (missing currency / trip length)
    confirmed -> relock_pending -> confirmed       (change needs a fresh yes)

Every transition is written through the persistence contract and recorded in
the decision log. Changing a slot that searches were built from evicts the
dependent cached offer sets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from tripbrief import telemetry
from tripbrief.brief import (
    OPTIONAL_SLOTS,
    REQUIRED_SLOTS,
    SLOT_QUESTIONS,
    append_history,
    coerce_value,
    describe_value,
    missing_required,
    value_hash,
)
from tripbrief.cache import OfferCache
from tripbrief.contracts import (
    Clarification,
    ClarificationOption,
    Constraint,
    PendingChange,
    PlanCondition,
    TripBrief,
)
from tripbrief.extractor import AmbiguousCandidates, PendingUnit, ReplyKind, SingleCandidate
from tripbrief.persistence import TripStore


# Search domains whose offers depend on each slot.
SLOT_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "destination": ("hotels", "activities", "restaurants", "flights"),
    "date_range": ("hotels", "activities", "restaurants", "flights"),
    "travelers": ("hotels", "flights", "activities"),
    "budget": ("hotels", "activities", "restaurants"),
    "style": ("hotels", "restaurants"),
    "origin": ("flights",),
    "preferences": ("activities", "restaurants", "hotels"),
}
# A committed change to these slots rebuilds the budget allocation.
BUDGET_SLOTS = frozenset({"budget", "date_range", "travelers"})


class SlotTransitionError(ValueError):
    """Raised for a transition the slot lifecycle does not allow."""


@dataclass
class TransitionResult:
    slots_updated: list[str] = field(default_factory=list)
    confirmed: list[str] = field(default_factory=list)
    relock_requested: list[str] = field(default_factory=list)
    relocked: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    invalidated_domains: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    conditions: list[PlanCondition] = field(default_factory=list)
    next_slot: str | None = None
    question: str | None = None
    plan_confirmed: bool = False
    plan_rejected: bool = False
    budget_recompute: bool = False

    @property
    def changed(self) -> bool:
        return bool(
            self.slots_updated
            or self.confirmed
            or self.relock_requested
            or self.relocked
            or self.rejected
            or self.plan_confirmed
            or self.plan_rejected
        )


class SlotStateMachine:
    def __init__(
        self,
        store: TripStore,
        cache: OfferCache | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def apply(
        self,
        brief: TripBrief,
        *,
        reply: ReplyKind | None = None,
        candidates: list[SingleCandidate | AmbiguousCandidates | PendingUnit] | None = None,
        resolved: SingleCandidate | None = None,
    ) -> TransitionResult:
        """Apply one turn's reply and candidates to `brief` in place."""
        result = TransitionResult()
        if brief.phase == "archived":
            raise SlotTransitionError(f"trip '{brief.trip_id}' is archived and read-only")

        with telemetry.start_span("turn.state_machine", {"tripbrief.trip_id": brief.trip_id}) as span:
            if reply == "affirm":
                self._affirm(brief, result)
            elif reply == "deny":
                self._deny(brief, result)

            if resolved is not None:
                brief.clarification = None
                self._apply_single(brief, resolved, result)

            for candidate in candidates or []:
                if isinstance(candidate, SingleCandidate):
                    if brief.clarification is not None and brief.clarification.slot == candidate.slot:
                        brief.clarification = None
                    self._apply_single(brief, candidate, result)
                elif isinstance(candidate, PendingUnit):
                    self._apply_pending_unit(brief, candidate, result)
                elif isinstance(candidate, AmbiguousCandidates):
                    self._apply_ambiguous(brief, candidate, result)

            self._advance(brief, result)
            if result.changed:
                brief.version += 1
            telemetry.set_attributes(
                span,
                phase=brief.phase,
                slots_updated=result.slots_updated,
                evicted=len(result.evicted),
            )
        return result

    def confirm_slot(self, brief: TripBrief, slot: str) -> TransitionResult:
        """Lock a filled slot directly, outside of a yes/no reply."""
        constraint = brief.slot(slot)
        if constraint.status != "filled":
            raise SlotTransitionError(f"cannot confirm slot '{slot}' in status '{constraint.status}'")
        result = TransitionResult()
        self._lock(brief, slot, result)
        self._advance(brief, result)
        brief.version += 1
        return result

    # -- replies ----------------------------------------------------------------

    def _affirm(self, brief: TripBrief, result: TransitionResult) -> None:
        relocks = [name for name, c in brief.slots.items() if c.status == "relock_pending"]
        filled = [name for name, c in brief.slots.items() if c.status == "filled"]
        for name in relocks:
            self._commit_relock(brief, name, result)
        for name in filled:
            self._lock(brief, name, result)
        if not relocks and not filled and brief.phase == "plan_proposed" and brief.proposed_plan:
            brief.phase = "plan_confirmed"
            result.plan_confirmed = True
            self._log(
                brief,
                "plan_confirmed",
                "Traveller accepted the proposed plan.",
                {"based_on": brief.proposed_plan.get("based_on", {})},
            )

    def _deny(self, brief: TripBrief, result: TransitionResult) -> None:
        relocks = [name for name, c in brief.slots.items() if c.status == "relock_pending"]
        filled = [name for name, c in brief.slots.items() if c.status == "filled"]
        now = self._clock()
        for name in relocks:
            constraint = brief.slot(name)
            dropped = constraint.pending.value if constraint.pending else None
            constraint.pending = None
            constraint.status = "confirmed"
            self._store.upsert_slot(brief.trip_id, name, constraint)
            result.rejected.append(name)
            self._log(
                brief,
                "relock_dropped",
                f"Kept {name} as {describe_value(name, constraint.value)}.",
                {"slot": name, "dropped": _jsonable(dropped)},
            )
        for name in filled:
            constraint = brief.slot(name)
            append_history(constraint, now=now, reason="rejected")
            constraint.value = None
            constraint.confidence = 0
            constraint.source = "default"
            constraint.status = "empty"
            self._store.upsert_slot(brief.trip_id, name, constraint)
            result.rejected.append(name)
            self._log(brief, "slot_rejected", f"Traveller rejected the proposed {name}.", {"slot": name})
        if not relocks and not filled and brief.phase == "plan_proposed":
            brief.phase = "ready_to_plan"
            brief.proposed_plan = None
            result.plan_rejected = True
            self._log(brief, "plan_rejected", "Traveller rejected the proposed plan.", {})

    # -- candidates -------------------------------------------------------------

    def _apply_single(self, brief: TripBrief, candidate: SingleCandidate, result: TransitionResult) -> None:
        name = candidate.slot
        constraint = brief.slot(name)
        incoming = value_hash(candidate.value)

        if constraint.status in {"confirmed", "relock_pending"}:
            if incoming == value_hash(constraint.value):
                if constraint.status == "relock_pending":
                    constraint.pending = None
                    constraint.status = "confirmed"
                    self._store.upsert_slot(brief.trip_id, name, constraint)
                    result.rejected.append(name)
                return
            if constraint.pending is not None and incoming == value_hash(constraint.pending.value):
                return
            constraint.pending = PendingChange(
                value=candidate.value,
                confidence=candidate.confidence,
                source=candidate.source,
                evidence=candidate.evidence,
            )
            constraint.status = "relock_pending"
            self._store.upsert_slot(brief.trip_id, name, constraint)
            result.relock_requested.append(name)
            self._log(
                brief,
                "relock_requested",
                f"Asked to change locked {name} to {describe_value(name, candidate.value)}.",
                {"slot": name, "confidence": candidate.confidence, "evidence": candidate.evidence},
            )
            return

        if constraint.value is not None and incoming == value_hash(constraint.value) and constraint.status == "filled":
            return

        append_history(constraint, now=self._clock(), reason="updated")
        constraint.value = candidate.value
        constraint.confidence = candidate.confidence
        constraint.source = candidate.source
        constraint.status = "filled"
        constraint.pending = None
        self._store.upsert_slot(brief.trip_id, name, constraint)
        result.slots_updated.append(name)
        self._log(
            brief,
            "slot_filled",
            f"Set {name} to {describe_value(name, candidate.value)}.",
            {
                "slot": name,
                "confidence": candidate.confidence,
                "source": candidate.source,
                "evidence": candidate.evidence,
            },
        )

    def _apply_pending_unit(self, brief: TripBrief, candidate: PendingUnit, result: TransitionResult) -> None:
        name = candidate.slot
        constraint = brief.slot(name)
        if constraint.status in {"confirmed", "relock_pending"}:
            result.conditions.append(
                PlanCondition(
                    code="pending_clarification",
                    message=candidate.question,
                    slot=name,
                    details={"missing": candidate.missing},
                )
            )
            return
        append_history(constraint, now=self._clock(), reason="updated")
        constraint.value = candidate.value
        constraint.confidence = candidate.confidence
        constraint.source = "explicit"
        constraint.status = "pending_clarification"
        self._store.upsert_slot(brief.trip_id, name, constraint)
        result.slots_updated.append(name)
        result.conditions.append(
            PlanCondition(
                code="pending_clarification",
                message=candidate.question,
                slot=name,
                details={"missing": candidate.missing},
            )
        )
        self._log(
            brief,
            "slot_pending_clarification",
            f"{name} is missing its {candidate.missing}.",
            {"slot": name, "missing": candidate.missing, "evidence": candidate.evidence},
        )

    def _apply_ambiguous(
        self,
        brief: TripBrief,
        candidate: AmbiguousCandidates,
        result: TransitionResult,
    ) -> None:
        labels = candidate.labels or [describe_value(candidate.slot, o.value) for o in candidate.options]
        brief.clarification = Clarification(
            slot=candidate.slot,
            question=candidate.question,
            options=[
                ClarificationOption(label=label, value=option.value, confidence=option.confidence)
                for label, option in zip(labels, candidate.options)
            ],
        )
        result.conditions.append(
            PlanCondition(
                code="extraction_ambiguous",
                message=candidate.question,
                slot=candidate.slot,
                details={"options": labels},
            )
        )
        self._log(
            brief,
            "clarification_requested",
            candidate.question,
            {"slot": candidate.slot, "options": labels},
        )

    # -- locking & invalidation -------------------------------------------------

    def _lock(self, brief: TripBrief, name: str, result: TransitionResult) -> None:
        constraint = brief.slot(name)
        now = self._clock()
        constraint.locked_at = now
        constraint.status = "confirmed"
        self._store.upsert_slot(brief.trip_id, name, constraint)
        self._store.lock_slot(brief.trip_id, name, now)
        result.confirmed.append(name)
        self._log(
            brief,
            "slot_confirmed",
            f"Locked {name} as {describe_value(name, constraint.value)}.",
            {"slot": name},
        )
        if brief.phase in {"plan_proposed", "plan_confirmed"}:
            for domain in SLOT_DEPENDENCIES.get(name, ()):
                if domain not in brief.stale_domains:
                    brief.stale_domains.append(domain)
            brief.phase = "ready_to_plan"
            brief.proposed_plan = None

    def _commit_relock(self, brief: TripBrief, name: str, result: TransitionResult) -> None:
        constraint = brief.slot(name)
        if constraint.pending is None:
            raise SlotTransitionError(f"slot '{name}' has no pending change to commit")
        now = self._clock()
        previous_hash = value_hash(constraint.value)
        append_history(constraint, now=now, reason="relocked")
        constraint.value = constraint.pending.value
        constraint.confidence = constraint.pending.confidence
        constraint.source = constraint.pending.source
        constraint.pending = None
        constraint.status = "confirmed"
        constraint.locked_at = now
        self._store.upsert_slot(brief.trip_id, name, constraint)
        self._store.lock_slot(brief.trip_id, name, now)
        result.relocked.append(name)
        self._log(
            brief,
            "relock_committed",
            f"Changed locked {name} to {describe_value(name, constraint.value)}.",
            {"slot": name},
        )
        self._invalidate(brief, name, previous_hash, result)
        if name in BUDGET_SLOTS:
            result.budget_recompute = True
        if brief.phase in {"plan_proposed", "plan_confirmed"}:
            brief.phase = "ready_to_plan"
            brief.proposed_plan = None

    def _invalidate(self, brief: TripBrief, name: str, previous_hash: str, result: TransitionResult) -> None:
        domains = SLOT_DEPENDENCIES.get(name, ())
        evicted: list[str] = []
        if self._cache is not None:
            with telemetry.start_span("cache.evict", {"tripbrief.trip_id": brief.trip_id}) as span:
                evicted = self._cache.evict_slot_value(name, previous_hash, domains)
                telemetry.set_attributes(span, evicted=len(evicted), domain=",".join(domains))
        for domain in domains:
            if domain not in brief.stale_domains:
                brief.stale_domains.append(domain)
            if domain not in result.invalidated_domains:
                result.invalidated_domains.append(domain)
        result.evicted.extend(evicted)
        self._log(
            brief,
            "cache_invalidated",
            f"Offers built from the old {name} are stale.",
            {"slot": name, "domains": list(domains), "evicted": evicted},
        )

    # -- next question ----------------------------------------------------------

    def _advance(self, brief: TripBrief, result: TransitionResult) -> None:
        if brief.clarification is not None:
            result.next_slot = brief.clarification.slot
            result.question = brief.clarification.question
            return

        for name in (*REQUIRED_SLOTS, *OPTIONAL_SLOTS):
            if brief.slot(name).status == "pending_clarification":
                result.next_slot = name
                result.question = _pending_question(name, brief.slot(name))
                return

        relocks = [name for name, c in brief.slots.items() if c.status == "relock_pending"]
        if relocks:
            name = relocks[0]
            constraint = brief.slot(name)
            if constraint.pending is None:
                raise SlotTransitionError(f"{name} is relock_pending without a pending value")
            result.next_slot = name
            result.question = (
                f"Your {name.replace('_', ' ')} is locked as {describe_value(name, constraint.value)}. "
                f"Change it to {describe_value(name, constraint.pending.value)}?"
            )
            return

        unconfirmed = [name for name, c in brief.slots.items() if c.status == "filled"]
        if unconfirmed:
            summary = "; ".join(
                f"{name.replace('_', ' ')}: {describe_value(name, brief.slot(name).value)}" for name in unconfirmed
            )
            result.next_slot = unconfirmed[0]
            result.question = f"Got it. {summary}. Is that right?"
            return

        missing = missing_required(brief)
        if missing:
            result.next_slot = missing[0]
            result.question = SLOT_QUESTIONS[missing[0]]
            if brief.phase != "collecting":
                brief.phase = "collecting"
            return

        if brief.phase == "collecting":
            brief.phase = "ready_to_plan"
            self._log(brief, "ready_to_plan", "All required slots are confirmed.", {})
        result.next_slot = None
        result.question = None

    def _log(self, brief: TripBrief, event_type: str, message: str, metadata: dict[str, Any]) -> None:
        self._store.append_decision_log(brief.trip_id, event_type, message, metadata)


def _pending_question(name: str, constraint: Constraint) -> str:
    if name == "budget":
        amount = coerce_value(name, constraint.value).amount
        shown = str(int(amount)) if amount == amount.to_integral_value() else f"{amount:.2f}"
        return f"Which currency is that {shown} in?"
    if name == "date_range":
        return "How many days will the trip last?"
    return SLOT_QUESTIONS[name]


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value
