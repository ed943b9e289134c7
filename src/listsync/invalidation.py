"""Tag invalidation graph: tags -> cache entries."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable

from listsync.store import CacheStore
from listsync.tags import format_tag, matches_any
from listsync.types import QueryKey, Tag

logger = logging.getLogger(__name__)


class TagIndex:
    """Many-to-many index between tags and QueryKeys.

    Invalidating a tag also covers every more specific tag it prefixes, so
    ``("Observation",)`` reaches ``("Observation", "patient", "p1")``.
    Invalidation only flags entries; cached records stay visible until a
    refetch replaces them.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._by_tag: dict[Tag, set[QueryKey]] = {}
        self._by_key: dict[QueryKey, set[Tag]] = {}
        self._refetch: Callable[[QueryKey], Awaitable[object]] | None = None
        store.set_on_evict(self.untag)

    def set_refetcher(self, refetch: Callable[[QueryKey], Awaitable[object]]) -> None:
        self._refetch = refetch

    def tag(self, key: QueryKey, tags: Iterable[Tag]) -> None:
        """Attach tags to the entry for ``key``."""
        entry = self._store.get_or_create(key)
        for tag in tags:
            tag = Tag(tuple(tag))
            self._by_tag.setdefault(tag, set()).add(key)
            self._by_key.setdefault(key, set()).add(tag)
            entry.tags.add(tag)

    def untag(self, key: QueryKey) -> None:
        """Drop every tag for ``key`` (called on eviction)."""
        for tag in self._by_key.pop(key, set()):
            keys = self._by_tag.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._by_tag[tag]

    def tags_for(self, key: QueryKey) -> set[Tag]:
        return set(self._by_key.get(key, ()))

    def keys_for(self, tags: Iterable[Tag]) -> list[QueryKey]:
        """All keys carrying any of ``tags`` (or a more specific tag)."""
        targets = [Tag(tuple(t)) for t in tags]
        found: set[QueryKey] = set()
        for tag, keys in self._by_tag.items():
            if matches_any(tag, targets):
                found.update(keys)
        # Keep store order so callers see a deterministic sequence
        return [key for key in self._store.keys() if key in found]

    def mark_stale(self, tags: Iterable[Tag]) -> list[QueryKey]:
        """Flag matching entries stale, once per call regardless of overlap."""
        tags = list(tags)
        keys = self.keys_for(tags)
        for key in keys:
            entry = self._store.get(key)
            if entry is None:
                continue
            entry.stale = True
            entry.stale_marks += 1
            # Reads already in flight can no longer clear the flag
            entry.stale_seq = entry.issued_seq
        if keys:
            logger.debug(
                "Marked %d entries stale for tags %s",
                len(keys),
                ", ".join(format_tag(t) for t in tags),
            )
            self._store.notify(keys)
        return keys

    async def invalidate(self, tags: Iterable[Tag]) -> list[QueryKey]:
        """Mark entries stale and refetch the observed ones now.

        Unobserved entries are refetched lazily on their next load. Refetch
        failures are recorded on the entry by the refetcher and logged here.
        """
        keys = self.mark_stale(tags)
        if self._refetch is None:
            return keys
        observed = [key for key in keys if self._store.is_observed(key)]
        for key in observed:
            try:
                await self._refetch(key)
            except Exception as exc:
                logger.warning("Refetch after invalidation failed for %r: %s", key, exc)
        return keys
