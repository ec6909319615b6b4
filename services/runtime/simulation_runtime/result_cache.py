from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, TypeVar

from .models import CacheStats, SimulationKind
from .utils import sha256_bytes, stable_json_dumps

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT")


def cache_key(model_id: str, kind: SimulationKind | str, parameters: Mapping[str, Any]) -> str:
    kind_value = SimulationKind(kind).value
    material = f"{model_id}{kind_value}{stable_json_dumps(dict(parameters))}"
    return f"simulation:{kind_value}:{sha256_bytes(material.encode('utf-8'))[:16]}"


@dataclass
class CacheEntry(Generic[PayloadT]):
    key: str
    payload: PayloadT
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class ResultCache(Generic[PayloadT]):
    """Bounded TTL cache of completed simulation results.

    Entries are evicted oldest-stored first when the cache is full; a read of an
    expired entry removes it and reports a miss (``None``).
    """

    def __init__(
        self,
        max_entries: int = 128,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[PayloadT]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> PayloadT | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            logger.debug("cache entry %s expired", key)
            return None
        self._hits += 1
        return entry.payload

    def set(self, key: str, payload: PayloadT, ttl: float | None = None) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            logger.debug("cache full, evicted %s", evicted_key)
        self._entries[key] = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            keys=list(self._entries.keys()),
            hits=self._hits,
            misses=self._misses,
            hitRate=round(self._hits / lookups, 4) if lookups else 0.0,
        )

    def __len__(self) -> int:
        return len(self._entries)
