"""Search/offer cache: fingerprints, TTL + LRU storage, single-flight fetches, rate limiting."""

from __future__ import annotations

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from hashlib import sha256
import json
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Mapping

from tripbrief.contracts import OfferSet


Clock = Callable[[], float]


def normalize_text(value: str) -> str:
    return " ".join(value.strip().lower().split())


def stable_json_hash(payload: Any) -> str:
    serialized = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )
    return sha256(serialized.encode("utf-8")).hexdigest()[:16]


def normalize_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Canonical form of search parameters: trimmed lowercase text, sorted lists, no Nones."""
    normalized: dict[str, Any] = {}
    for key in sorted(params):
        value = params[key]
        if value is None:
            continue
        if isinstance(value, str):
            normalized[key] = normalize_text(value)
        elif isinstance(value, float):
            normalized[key] = round(value, 6)
        elif isinstance(value, (list, tuple, set)):
            items = [normalize_text(v) if isinstance(v, str) else v for v in value]
            normalized[key] = sorted(items, key=str)
        elif isinstance(value, dict):
            normalized[key] = normalize_params(value)
        else:
            normalized[key] = value
    return normalized


def make_fingerprint(domain: str, params: Mapping[str, Any]) -> str:
    return f"{normalize_text(domain)}:{stable_json_hash(normalize_params(params))}"


def slot_value_hash(value: Any) -> str:
    """Hash of a slot value, used to find every offer set built from it."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return stable_json_hash(value)


class KeyedLocks:
    """One lock per key, dropped once no thread holds or waits on it."""

    def __init__(self) -> None:
        self._entries: dict[str, list[Any]] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass
class _CacheItem:
    offer_set: OfferSet
    expires_at: float
    slot_hashes: dict[str, str] = field(default_factory=dict)


class OfferCache:
    """LRU + TTL store of offer sets keyed by fingerprint.

    Each fingerprint has its own lock so at most one fetch per fingerprint is in
    flight; unrelated fingerprints never wait on each other.
    """

    def __init__(
        self,
        max_size: int = 1024,
        ttl_seconds: float = 3600.0,
        clock: Clock | None = None,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._items: OrderedDict[str, _CacheItem] = OrderedDict()
        self._items_lock = threading.Lock()
        self._key_locks = KeyedLocks()
        self.fetch_count = 0

    def get(self, fingerprint: str) -> OfferSet | None:
        with self._items_lock:
            item = self._items.get(fingerprint)
            if item is None:
                return None
            if item.expires_at <= self._clock():
                self._items.pop(fingerprint, None)
                return None
            self._items.move_to_end(fingerprint)
            return item.offer_set

    def set(
        self,
        offer_set: OfferSet,
        *,
        slot_hashes: Mapping[str, str] | None = None,
        ttl_seconds: float | None = None,
    ) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._items_lock:
            self._items.pop(offer_set.fingerprint, None)
            if ttl <= 0:
                return
            self._items[offer_set.fingerprint] = _CacheItem(
                offer_set=offer_set,
                expires_at=self._clock() + ttl,
                slot_hashes=dict(slot_hashes or {}),
            )
            self._items.move_to_end(offer_set.fingerprint)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def delete(self, fingerprint: str) -> None:
        with self._items_lock:
            self._items.pop(fingerprint, None)

    def get_or_fetch(
        self,
        fingerprint: str,
        fetch: Callable[[], OfferSet],
        *,
        slot_hashes: Mapping[str, str] | None = None,
        cacheable: Callable[[OfferSet], bool] | None = None,
    ) -> tuple[OfferSet, bool]:
        """Return `(offer_set, from_cache)`, fetching under the fingerprint's lock on a miss."""
        cached = self.get(fingerprint)
        if cached is not None:
            return cached, True

        with self._key_locks.hold(fingerprint):
            cached = self.get(fingerprint)
            if cached is not None:
                return cached, True
            with self._items_lock:
                self.fetch_count += 1
            offer_set = fetch()
            if cacheable is None or cacheable(offer_set):
                self.set(offer_set, slot_hashes=slot_hashes)
            return offer_set, False

    def evict_slot_value(
        self,
        slot: str,
        value_hash: str,
        domains: Iterable[str] | None = None,
    ) -> list[str]:
        """Drop every offer set built from `slot == value_hash` in the given domains."""
        domain_filter = set(domains) if domains is not None else None
        with self._items_lock:
            evicted = [
                fingerprint
                for fingerprint, item in self._items.items()
                if item.slot_hashes.get(slot) == value_hash
                and (domain_filter is None or item.offer_set.domain in domain_filter)
            ]
            for fingerprint in evicted:
                self._items.pop(fingerprint, None)
        return evicted

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._items_lock:
            expired = [key for key, item in self._items.items() if item.expires_at <= now]
            for key in expired:
                self._items.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        with self._items_lock:
            return len(self._items)


class RateLimiter:
    """Token bucket rate limiter."""

    def __init__(self, rate_per_second: float, capacity: float, clock: Clock | None = None) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.rate_per_second = rate_per_second
        self.capacity = capacity
        self._clock = clock or time.monotonic
        self._tokens = capacity
        self._last_refill = self._clock()
        self._lock = threading.Lock()

    def allow(self, tokens: float = 1.0) -> bool:
        if tokens <= 0:
            raise ValueError("tokens must be > 0")
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def wait_time(self, tokens: float = 1.0) -> float:
        if tokens <= 0:
            raise ValueError("tokens must be > 0")
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                return 0.0
            missing = tokens - self._tokens
            return missing / self.rate_per_second

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
