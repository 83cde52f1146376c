"""Persistence contract for trip state, the decision log and search records.

The core only talks to storage through `TripStore`; `InMemoryTripStore` is the
reference implementation used by the CLI and the tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
import threading
from typing import Any, Callable, Protocol
import uuid

from pydantic import BaseModel, Field

from tripbrief.brief import missing_required
from tripbrief.contracts import Constraint, OfferSet, TripBrief


class PersistenceUnavailableError(RuntimeError):
    """Storage could not be reached; the turn must not invent state."""


class DecisionLogEntry(BaseModel):
    trip_id: str
    event_type: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class SearchRecord(BaseModel):
    request_id: str
    trip_id: str
    domain: str
    params: dict[str, Any]
    created_at: datetime
    offer_count: int | None = None
    failures: list[str] = Field(default_factory=list)


class TripStore(Protocol):
    def load_trip_state(self, trip_id: str) -> tuple[TripBrief | None, list[str]]:
        """Return the stored brief (None when unknown) and its unconfirmed required slots."""
        ...

    def save_trip_state(self, brief: TripBrief) -> None:
        ...

    def upsert_slot(self, trip_id: str, slot_name: str, constraint: Constraint) -> None:
        ...

    def lock_slot(self, trip_id: str, slot_name: str, locked_at: datetime) -> None:
        ...

    def append_decision_log(
        self,
        trip_id: str,
        event_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    def create_search_request(self, trip_id: str, domain: str, params: dict[str, Any]) -> str:
        ...

    def save_offers(self, trip_id: str, request_id: str, offer_set: OfferSet) -> None:
        ...

    def get_turn_response(self, trip_id: str, counter: int) -> dict[str, Any] | None:
        ...

    def save_turn_response(self, trip_id: str, counter: int, payload: dict[str, Any]) -> None:
        ...


class InMemoryTripStore:
    """In-memory implementation of TripStore.

    Briefs are deep-copied on the way in and out so callers never share mutable
    state with the store. Set `available = False` to simulate an outage.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._briefs: dict[str, TripBrief] = {}
        self._log: list[DecisionLogEntry] = []
        self._searches: dict[str, SearchRecord] = {}
        self._offers: dict[str, OfferSet] = {}
        self._turns: dict[tuple[str, int], dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.available = True

    def load_trip_state(self, trip_id: str) -> tuple[TripBrief | None, list[str]]:
        self._check()
        with self._lock:
            brief = self._briefs.get(trip_id)
            if brief is None:
                return None, []
            copy = brief.model_copy(deep=True)
        return copy, missing_required(copy)

    def save_trip_state(self, brief: TripBrief) -> None:
        self._check()
        with self._lock:
            self._briefs[brief.trip_id] = brief.model_copy(deep=True)

    def upsert_slot(self, trip_id: str, slot_name: str, constraint: Constraint) -> None:
        self._check()
        with self._lock:
            brief = self._briefs.get(trip_id)
            if brief is None:
                brief = TripBrief(trip_id=trip_id)
                self._briefs[trip_id] = brief
            brief.slots[slot_name] = constraint.model_copy(deep=True)

    def lock_slot(self, trip_id: str, slot_name: str, locked_at: datetime) -> None:
        self._check()
        with self._lock:
            brief = self._briefs.get(trip_id)
            if brief is None:
                raise KeyError(f"unknown trip '{trip_id}'")
            constraint = brief.slots[slot_name]
            constraint.locked_at = locked_at
            constraint.status = "confirmed"

    def append_decision_log(
        self,
        trip_id: str,
        event_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._check()
        entry = DecisionLogEntry(
            trip_id=trip_id,
            event_type=event_type,
            message=message,
            metadata=dict(metadata or {}),
            timestamp=self._clock(),
        )
        with self._lock:
            self._log.append(entry)

    def create_search_request(self, trip_id: str, domain: str, params: dict[str, Any]) -> str:
        self._check()
        request_id = f"search-{uuid.uuid4().hex[:12]}"
        record = SearchRecord(
            request_id=request_id,
            trip_id=trip_id,
            domain=domain,
            params=dict(params),
            created_at=self._clock(),
        )
        with self._lock:
            self._searches[request_id] = record
        return request_id

    def save_offers(self, trip_id: str, request_id: str, offer_set: OfferSet) -> None:
        self._check()
        with self._lock:
            record = self._searches.get(request_id)
            if record is None or record.trip_id != trip_id:
                raise KeyError(f"unknown search request '{request_id}' for trip '{trip_id}'")
            record.offer_count = len(offer_set.offers)
            record.failures = list(offer_set.failures)
            self._offers[request_id] = offer_set

    def get_turn_response(self, trip_id: str, counter: int) -> dict[str, Any] | None:
        self._check()
        with self._lock:
            payload = self._turns.get((trip_id, counter))
            return dict(payload) if payload is not None else None

    def save_turn_response(self, trip_id: str, counter: int, payload: dict[str, Any]) -> None:
        self._check()
        with self._lock:
            self._turns[(trip_id, counter)] = dict(payload)

    def decision_log(self, trip_id: str, event_type: str | None = None) -> list[DecisionLogEntry]:
        with self._lock:
            return [
                entry
                for entry in self._log
                if entry.trip_id == trip_id and (event_type is None or entry.event_type == event_type)
            ]

    def search_records(self, trip_id: str) -> list[SearchRecord]:
        with self._lock:
            return [record for record in self._searches.values() if record.trip_id == trip_id]

    def _check(self) -> None:
        if not self.available:
            raise PersistenceUnavailableError("trip store is unavailable")
