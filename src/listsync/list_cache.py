"""Paginated list cache: one visible page per QueryKey, cursor-driven."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from listsync.dedupe import RequestDeduplicator
from listsync.exceptions import StaleCursorFailure
from listsync.invalidation import TagIndex
from listsync.store import CacheStore
from listsync.transports.base import AsyncResourceTransport
from listsync.types import (
    CacheEntry,
    EntryStatus,
    Page,
    Projection,
    QueryKey,
    ResourceRecord,
    Tag,
)

logger = logging.getLogger(__name__)

# Lets pending optimistic changes survive a refetch of the page they touch
PageHook = Callable[[QueryKey, list[ResourceRecord]], list[ResourceRecord]]


class PaginatedListCache:
    """Cache of collection pages keyed by QueryKey.

    Each key shows one page at a time: ``advance`` replaces the visible
    records with the next page rather than appending. Whether a next page
    exists is decided only by the presence of a continuation cursor.

    Responses for a key are stamped with a per-key sequence number at issue
    time; a response older than the last one applied is dropped, and one
    issued before the entry was last marked stale leaves it stale.
    """

    def __init__(
        self,
        transport: AsyncResourceTransport,
        store: CacheStore,
        index: TagIndex,
        dedupe: RequestDeduplicator,
        *,
        stale_after_ms: int | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._index = index
        self._dedupe = dedupe
        self._stale_after_ms = stale_after_ms
        self._page_hook: PageHook | None = None
        index.set_refetcher(self.refetch)

    def set_page_hook(self, hook: PageHook) -> None:
        self._page_hook = hook

    def entry(self, key: QueryKey) -> CacheEntry | None:
        return self._store.get(key)

    def projection(self, key: QueryKey) -> Projection:
        return Projection.of(self._store.get(key))

    async def load(
        self,
        key: QueryKey,
        *,
        tags: Iterable[Tag] | None = None,
        force: bool = False,
    ) -> Projection:
        """Load the visible page for ``key``.

        A fresh, successful entry is served from cache. Otherwise the page
        currently shown (the first page on a new entry) is read again. On
        failure the previous records stay in place, the entry is flagged and
        the error propagates.
        """
        entry = self._store.get_or_create(key)
        self._index.tag(key, key.default_tags() if tags is None else tags)

        if not force and self._is_fresh(entry):
            logger.debug("Cache hit for %r", key)
            return Projection.of(entry)

        return await self._fetch(key, entry.page_cursor, entry.page_index)

    async def refetch(self, key: QueryKey) -> Projection:
        return await self.load(key, force=True)

    async def advance(self, key: QueryKey) -> Projection:
        """Replace the visible page with the next one.

        Without a continuation cursor this is a no-op: the current page is
        returned and no request is made.
        """
        entry = self._store.get(key)
        if entry is None or entry.continuation_cursor is None:
            return Projection.of(entry)
        return await self._fetch(key, entry.continuation_cursor, entry.page_index + 1)

    async def reset(self, key: QueryKey) -> Projection:
        """Go back to the first page."""
        self._store.get_or_create(key)
        return await self._fetch(key, None, 0)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry) -> bool:
        if entry.status is not EntryStatus.SUCCESS or entry.stale:
            return False
        if self._stale_after_ms is None or entry.fetched_at is None:
            return True
        age_ms = (time.monotonic() - entry.fetched_at) * 1000
        return age_ms < self._stale_after_ms

    async def _fetch(
        self, key: QueryKey, cursor: str | None, page_index: int
    ) -> Projection:
        async def loader() -> Page:
            entry = self._store.get_or_create(key)
            seq = self._begin(entry)
            try:
                page = await self._transport.fetch_page(key, cursor)
            except StaleCursorFailure as e:
                if cursor is None:
                    self._fail(entry, seq, e)
                    raise
                # Never retry a refused cursor; start over from page one
                logger.warning("Cursor rejected for %r; resetting to first page", key)
                self._finish(entry, seq)
                await self._fetch(key, None, 0)
                return Page(records=[])
            except Exception as e:
                self._fail(entry, seq, e)
                raise
            self._apply(entry, seq, page, cursor, page_index)
            return page

        # A read issued before the latest stale marking is never joined
        generation = self._store.get_or_create(key).stale_marks
        await self._dedupe.fetch((key, cursor, generation), loader)
        return Projection.of(self._store.get(key))

    def _begin(self, entry: CacheEntry) -> int:
        entry.issued_seq += 1
        entry.is_fetching = True
        if entry.status is EntryStatus.IDLE:
            entry.status = EntryStatus.LOADING
        self._store.notify([entry.key])
        return entry.issued_seq

    def _finish(self, entry: CacheEntry, seq: int) -> None:
        if seq == entry.issued_seq:
            entry.is_fetching = False

    def _is_current(self, entry: CacheEntry, seq: int) -> bool:
        # Evicted entries and responses older than the last applied are dropped
        if self._store.get(entry.key) is not entry:
            return False
        return seq >= entry.applied_seq

    def _apply(
        self,
        entry: CacheEntry,
        seq: int,
        page: Page,
        cursor: str | None,
        page_index: int,
    ) -> None:
        self._finish(entry, seq)
        if not self._is_current(entry, seq):
            logger.debug("Dropping out-of-order response %d for %r", seq, entry.key)
            return

        records = list(page.records)
        if self._page_hook is not None:
            records = self._page_hook(entry.key, records)
        entry.records = records
        entry.continuation_cursor = page.next_cursor
        entry.page_cursor = cursor
        entry.page_index = page_index
        entry.total = page.total
        entry.fetched_at = time.monotonic()
        entry.status = EntryStatus.SUCCESS
        # Issued before the last invalidation: the data may predate it
        if seq > entry.stale_seq:
            entry.stale = False
        entry.error = None
        entry.applied_seq = seq
        self._store.notify([entry.key])

    def _fail(self, entry: CacheEntry, seq: int, error: BaseException) -> None:
        self._finish(entry, seq)
        if not self._is_current(entry, seq):
            return
        logger.warning("Read failed for %r: %s", entry.key, error)
        # Records are kept; only the status changes
        entry.status = EntryStatus.ERROR
        entry.error = error
        entry.applied_seq = seq
        self._store.notify([entry.key])
