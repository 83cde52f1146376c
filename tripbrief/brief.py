"""Helpers over the TripBrief constraint store: slot metadata, value coercion, snapshots."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from tripbrief.cache import slot_value_hash
from tripbrief.contracts import (
    SLOT_NAMES,
    BudgetValue,
    Constraint,
    DateRangeValue,
    DestinationValue,
    HistoryEntry,
    OriginValue,
    PreferencesValue,
    TravelersValue,
    TripBrief,
)


# Asked in this order; origin and preferences are optional.
REQUIRED_SLOTS: tuple[str, ...] = ("destination", "date_range", "travelers", "budget", "style")
OPTIONAL_SLOTS: tuple[str, ...] = ("origin", "preferences")

SLOT_KINDS: dict[str, str] = {
    "destination": "hard",
    "origin": "soft",
    "date_range": "hard",
    "travelers": "hard",
    "budget": "hard",
    "style": "soft",
    "preferences": "soft",
}

SLOT_VALUE_TYPES: dict[str, type[BaseModel] | None] = {
    "destination": DestinationValue,
    "origin": OriginValue,
    "date_range": DateRangeValue,
    "travelers": TravelersValue,
    "budget": BudgetValue,
    "style": None,
    "preferences": PreferencesValue,
}

SLOT_QUESTIONS: dict[str, str] = {
    "destination": "Where would you like to go?",
    "date_range": "When are you travelling, and for how many days?",
    "travelers": "How many people are travelling?",
    "budget": "What's your total budget, and in which currency?",
    "style": "What travel style suits you: budget, mid-range, luxury or a mix?",
    "origin": "Where will you be travelling from?",
    "preferences": "Anything you'd love to do or need, like food, museums or dietary needs?",
}


def new_brief(trip_id: str, *, user_id: str | None = None, now: datetime | None = None) -> TripBrief:
    brief = TripBrief(trip_id=trip_id, user_id=user_id, created_at=now)
    for name in SLOT_NAMES:
        brief.slots[name] = Constraint(kind=SLOT_KINDS[name])
    return brief


def coerce_value(slot: str, value: Any) -> Any:
    """Return the typed value model for a slot, accepting dicts read back from storage."""
    model = SLOT_VALUE_TYPES.get(slot)
    if model is None or value is None or isinstance(value, model):
        return value
    if isinstance(value, dict):
        try:
            return model.model_validate(value)
        except ValidationError:
            return value
    return value


def slot_value(brief: TripBrief, slot: str) -> Any:
    return coerce_value(slot, brief.slot(slot).value)


def value_hash(value: Any) -> str:
    return slot_value_hash(value)


def slot_hashes(brief: TripBrief, slots: tuple[str, ...] | list[str] = SLOT_NAMES) -> dict[str, str]:
    """Hashes of the current values of `slots`; empty slots are left out."""
    hashes: dict[str, str] = {}
    for name in slots:
        constraint = brief.slot(name)
        if constraint.value is not None:
            hashes[name] = value_hash(constraint.value)
    return hashes


def is_confirmed(constraint: Constraint) -> bool:
    return constraint.status in {"confirmed", "relock_pending"} and constraint.locked_at is not None


def missing_required(brief: TripBrief) -> list[str]:
    return [name for name in REQUIRED_SLOTS if not is_confirmed(brief.slot(name))]


def append_history(constraint: Constraint, *, now: datetime, reason: str) -> None:
    """Record the value being replaced. Entries are only ever appended."""
    if constraint.value is None:
        return
    previous = constraint.value
    if isinstance(previous, BaseModel):
        previous = previous.model_dump(mode="json")
    constraint.history.append(HistoryEntry(value=previous, timestamp=now, reason=reason))


def describe_value(slot: str, value: Any) -> str:
    value = coerce_value(slot, value)
    if isinstance(value, DestinationValue):
        if value.type == "multi-city":
            return " → ".join(value.detected_cities)
        return value.primary
    if isinstance(value, OriginValue):
        return value.name
    if isinstance(value, DateRangeValue):
        if value.start and value.end:
            return f"{value.start.isoformat()} to {value.end.isoformat()} ({value.duration} days)"
        return f"{value.duration} days"
    if isinstance(value, TravelersValue):
        text = f"{value.adults} adult{'s' if value.adults != 1 else ''}"
        if value.children:
            text += f" and {value.children} child{'ren' if value.children != 1 else ''}"
        return text
    if isinstance(value, BudgetValue):
        amount = f"{value.amount:,.2f}".rstrip("0").rstrip(".")
        scope = " per person" if value.scope == "per_person" else ""
        if value.currency_pending:
            return f"{amount}{scope} (currency not given)"
        return f"{amount} {value.currency}{scope}"
    if isinstance(value, PreferencesValue):
        parts = [*value.interests, *value.dietary]
        if value.accommodation_type:
            parts.append(value.accommodation_type)
        return ", ".join(parts) or "no particular preferences"
    if isinstance(value, dict) and "start" in value:
        return f"starting {value['start']}"
    return str(value)


def snapshot(brief: TripBrief) -> dict[str, Any]:
    """JSON-friendly view of the brief for replies and the CLI."""
    return {
        "trip_id": brief.trip_id,
        "version": brief.version,
        "phase": brief.phase,
        "slots": {
            name: {
                "status": constraint.status,
                "value": describe_value(name, constraint.value) if constraint.value is not None else None,
                "confidence": constraint.confidence,
                "source": constraint.source,
                "locked": constraint.locked_at is not None,
            }
            for name, constraint in brief.slots.items()
        },
        "stale_domains": list(brief.stale_domains),
    }


def archive_trip(brief: TripBrief, *, now: datetime) -> TripBrief:
    """Move a brief to the read-only archived phase."""
    archived = brief.model_copy(deep=True)
    archived.phase = "archived"
    archived.archived_at = now
    archived.clarification = None
    archived.version += 1
    return archived
