"""
Remembers which provider webhook events have already been processed.

Providers deliver at least once, so every ingestor claims an event id before
acting on it and releases the claim if processing fails. The backend is chosen
by ``settings.PAYMENTS_EVENT_STORE``:

* ``CacheEventStore`` keeps claims in a Django cache alias. ``cache.add`` is
  atomic, and pointing the alias at Redis or Memcached shares claims between
  instances.
* ``InMemoryEventStore`` is a bounded LRU for a single process.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from functools import lru_cache
from typing import Protocol

from django.conf import settings
from django.core.cache import caches
from django.utils.module_loading import import_string

DEFAULT_MAX_ENTRIES = 10_000


class ProcessedEventStore(Protocol):
    def claim(self, event_id: str) -> bool:
        """Return True if the event was not seen before and is now claimed."""

    def release(self, event_id: str) -> None:
        ...

    def __contains__(self, event_id: str) -> bool:
        ...


class InMemoryEventStore:
    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._events: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def claim(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._events:
                self._events.move_to_end(event_id)
                return False
            self._events[event_id] = None
            while len(self._events) > self.max_entries:
                self._events.popitem(last=False)
            return True

    def release(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class CacheEventStore:
    def __init__(self, alias: str = "webhook-events", key_prefix: str = "webhook-event", timeout: int | None = None):
        self.alias = alias
        self.key_prefix = key_prefix
        self.timeout = timeout

    @property
    def cache(self):
        return caches[self.alias]

    def _key(self, event_id: str) -> str:
        return f"{self.key_prefix}:{event_id}"

    def claim(self, event_id: str) -> bool:
        if self.timeout is None:
            return self.cache.add(self._key(event_id), True)
        return self.cache.add(self._key(event_id), True, timeout=self.timeout)

    def release(self, event_id: str) -> None:
        self.cache.delete(self._key(event_id))

    def __contains__(self, event_id: str) -> bool:
        return self.cache.get(self._key(event_id)) is not None


@lru_cache(maxsize=1)
def get_event_store() -> ProcessedEventStore:
    config = getattr(settings, "PAYMENTS_EVENT_STORE", {})
    backend = config.get("BACKEND", "payments.services.event_store.CacheEventStore")
    return import_string(backend)(**config.get("OPTIONS", {}))
