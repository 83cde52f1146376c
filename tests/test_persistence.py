from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tripbrief.brief import new_brief
from tripbrief.contracts import Constraint, OfferSet
from tripbrief.persistence import InMemoryTripStore, PersistenceUnavailableError


FIXED_NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


def _store() -> InMemoryTripStore:
    return InMemoryTripStore(clock=lambda: FIXED_NOW)


def test_unknown_trip_loads_as_none() -> None:
    brief, missing = _store().load_trip_state("nope")
    assert brief is None
    assert missing == []


def test_saved_brief_is_a_copy() -> None:
    store = _store()
    brief = new_brief("t1", now=FIXED_NOW)
    store.save_trip_state(brief)

    brief.slots["style"].value = "luxury"
    loaded, missing = store.load_trip_state("t1")

    assert loaded is not None
    assert loaded.slot("style").value is None
    assert missing == ["destination", "date_range", "travelers", "budget", "style"]


def test_upsert_and_lock_slot() -> None:
    store = _store()
    store.save_trip_state(new_brief("t1"))
    store.upsert_slot("t1", "style", Constraint(value="budget", status="filled", confidence=85))
    store.lock_slot("t1", "style", FIXED_NOW)

    loaded, missing = store.load_trip_state("t1")
    assert loaded.slot("style").status == "confirmed"
    assert loaded.slot("style").locked_at == FIXED_NOW
    assert "style" not in missing


def test_lock_unknown_trip_raises() -> None:
    with pytest.raises(KeyError):
        _store().lock_slot("nope", "style", FIXED_NOW)


def test_search_records_and_offers() -> None:
    store = _store()
    request_id = store.create_search_request("t1", "hotels", {"city": "Rome"})
    offer_set = OfferSet(
        fingerprint="hotels:abc",
        domain="hotels",
        params={"city": "rome"},
        fetched_at=FIXED_NOW,
        failures=["slow:timeout"],
    )
    store.save_offers("t1", request_id, offer_set)

    [record] = store.search_records("t1")
    assert record.offer_count == 0
    assert record.failures == ["slow:timeout"]

    with pytest.raises(KeyError):
        store.save_offers("other-trip", request_id, offer_set)


def test_decision_log_filters_by_event() -> None:
    store = _store()
    store.append_decision_log("t1", "slot_filled", "Set style.", {"slot": "style"})
    store.append_decision_log("t1", "slot_confirmed", "Locked style.")
    store.append_decision_log("t2", "slot_filled", "Set budget.")

    entries = store.decision_log("t1", "slot_filled")
    assert [entry.message for entry in entries] == ["Set style."]
    assert entries[0].timestamp == FIXED_NOW
    assert len(store.decision_log("t1")) == 2


def test_turn_responses_round_trip() -> None:
    store = _store()
    store.save_turn_response("t1", 1, {"reply": "hi"})
    assert store.get_turn_response("t1", 1) == {"reply": "hi"}
    assert store.get_turn_response("t1", 2) is None


def test_outage_raises_on_every_operation() -> None:
    store = _store()
    store.available = False
    with pytest.raises(PersistenceUnavailableError):
        store.load_trip_state("t1")
    with pytest.raises(PersistenceUnavailableError):
        store.save_trip_state(new_brief("t1"))
    with pytest.raises(PersistenceUnavailableError):
        store.append_decision_log("t1", "x", "y")
