"""Process-wide cache entry store with observers and LRU eviction."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable

from listsync.types import CacheEntry, Projection, QueryKey

logger = logging.getLogger(__name__)

Observer = Callable[[Projection], None]


class CacheStore:
    """Holds one CacheEntry per QueryKey.

    Bounded by ``max_entries``: when full, the least recently used entry that
    has no observers and no fetch in flight is evicted. Observed entries are
    never evicted, so the store may exceed the bound while many keys are
    watched.
    """

    def __init__(
        self,
        max_entries: int | None = 100,
        *,
        on_evict: Callable[[QueryKey], None] | None = None,
    ) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive or None")
        self._entries: OrderedDict[QueryKey, CacheEntry] = OrderedDict()
        self._observers: dict[QueryKey, list[Observer]] = {}
        self._max_entries = max_entries
        self._on_evict = on_evict

    def set_on_evict(self, callback: Callable[[QueryKey], None]) -> None:
        self._on_evict = callback

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def get(self, key: QueryKey) -> CacheEntry | None:
        """Get an entry by key, marking it recently used."""
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)  # LRU touch
        return entry

    def get_or_create(self, key: QueryKey) -> CacheEntry:
        entry = self.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
            self._evict(keep=key)
        return entry

    def delete(self, key: QueryKey) -> None:
        if self._entries.pop(key, None) is not None and self._on_evict:
            self._on_evict(key)

    def clear(self) -> None:
        for key in list(self._entries):
            self.delete(key)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def observe(self, key: QueryKey, observer: Observer) -> Callable[[], None]:
        """Register an observer for ``key``. Returns an unsubscribe function."""
        self.get_or_create(key)
        self._observers.setdefault(key, []).append(observer)

        def unsubscribe() -> None:
            observers = self._observers.get(key, [])
            if observer in observers:
                observers.remove(observer)
            if not observers:
                self._observers.pop(key, None)

        return unsubscribe

    def is_observed(self, key: QueryKey) -> bool:
        return bool(self._observers.get(key))

    def observer_count(self, key: QueryKey) -> int:
        return len(self._observers.get(key, ()))

    def notify(self, keys: Iterable[QueryKey]) -> None:
        """Push the current projection of each key to its observers."""
        for key in keys:
            observers = self._observers.get(key)
            if not observers:
                continue
            projection = Projection.of(self._entries.get(key))
            for observer in list(observers):
                observer(projection)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _evict(self, keep: QueryKey) -> None:
        if self._max_entries is None:
            return
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        victims = [
            key
            for key, entry in self._entries.items()
            if key != keep
            and not self.is_observed(key)
            and not entry.is_fetching
        ][:overflow]
        for key in victims:
            logger.debug("Evicting cache entry %r", key)
            self.delete(key)
