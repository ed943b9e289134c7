"""ResourceClient - the query/mutate entry point.

Provides:
- query(), advance(), reset(), refetch(): paginated reads through the cache
- view(), watch(): read-only projections for the presentation layer
- create(), update(), delete(), mutate(): optimistic single mutations
- submit_batch(): batch submission with sequential fallback
- invalidate(): tag-based invalidation
- close(): lifecycle
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from types import TracebackType
from typing import Any

from listsync.batch import BatchExecutor
from listsync.dedupe import RequestDeduplicator
from listsync.duration import parse_duration
from listsync.invalidation import TagIndex
from listsync.list_cache import PaginatedListCache
from listsync.merge import IdentityMatch, ObservationIdentity, SortKey, merge
from listsync.optimistic import OptimisticMutationEngine
from listsync.store import CacheStore, Observer
from listsync.transports.base import AsyncResourceTransport
from listsync.types import (
    BatchResult,
    Duration,
    Mutation,
    MutationOutcome,
    Projection,
    QueryKey,
    ResourceRecord,
    Tag,
)


class ResourceClient:
    """One cache store plus the components that read and write it.

    Create one per process (or per test) and pass it to whatever needs to
    query or mutate; there is no module-level instance.

        client = create_client(transport=AsyncFhirTransport("https://..."))
        page = await client.query(QueryKey("Patient"))
        await client.create("Patient", {"name": [{"text": "Ada"}]})
        await client.close()
    """

    def __init__(
        self,
        transport: AsyncResourceTransport,
        *,
        max_entries: int | None = 100,
        stale_after: Duration | None = "5m",
        identities: Mapping[str, IdentityMatch] | None = None,
    ) -> None:
        self._transport = transport
        self._store = CacheStore(max_entries)
        self._index = TagIndex(self._store)
        self._dedupe = RequestDeduplicator()
        self._lists = PaginatedListCache(
            transport,
            self._store,
            self._index,
            self._dedupe,
            stale_after_ms=(
                parse_duration(stale_after) if stale_after is not None else None
            ),
        )
        self._engine = OptimisticMutationEngine(
            self._store,
            self._index,
            self._lists,
            transport,
            identities=(
                identities
                if identities is not None
                else {"Observation": ObservationIdentity()}
            ),
        )
        self._batch = BatchExecutor(self._engine, self._index, transport)

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def tags(self) -> TagIndex:
        return self._index

    @property
    def lists(self) -> PaginatedListCache:
        return self._lists

    @property
    def engine(self) -> OptimisticMutationEngine:
        return self._engine

    # Reads

    async def query(
        self, key: QueryKey, *, tags: Iterable[Tag] | None = None
    ) -> Projection:
        return await self._lists.load(key, tags=tags)

    async def refetch(self, key: QueryKey) -> Projection:
        return await self._lists.refetch(key)

    async def advance(self, key: QueryKey) -> Projection:
        return await self._lists.advance(key)

    async def reset(self, key: QueryKey) -> Projection:
        return await self._lists.reset(key)

    def view(self, key: QueryKey) -> Projection:
        return self._lists.projection(key)

    def watch(self, key: QueryKey, observer: Observer) -> Callable[[], None]:
        """Observe ``key``. Observed entries are refetched on invalidation."""
        return self._store.observe(key, observer)

    def display(
        self,
        key: QueryKey,
        local: Sequence[ResourceRecord] = (),
        *,
        sort_key: SortKey | None = None,
        descending: bool = True,
    ) -> list[ResourceRecord]:
        """Merge caller-held pending records with the cached page."""
        return merge(
            self.view(key).records,
            local,
            identity=self._engine.identity_for(key.resource),
            sort_key=sort_key,
            descending=descending,
        )

    # Writes

    async def mutate(self, mutation: Mutation) -> MutationOutcome:
        return await self._engine.submit(mutation)

    async def create(
        self,
        resource_type: str,
        payload: Mapping[str, Any],
        *,
        tags: list[Tag] | None = None,
    ) -> MutationOutcome:
        return await self.mutate(Mutation.create(resource_type, payload, tags=tags))

    async def update(
        self,
        resource_type: str,
        target_id: str,
        payload: Mapping[str, Any],
        *,
        tags: list[Tag] | None = None,
    ) -> MutationOutcome:
        return await self.mutate(
            Mutation.update(resource_type, target_id, payload, tags=tags)
        )

    async def delete(
        self,
        resource_type: str,
        target_id: str,
        *,
        tags: list[Tag] | None = None,
    ) -> MutationOutcome:
        return await self.mutate(Mutation.delete(resource_type, target_id, tags=tags))

    async def submit_batch(self, mutations: list[Mutation]) -> BatchResult:
        return await self._batch.submit_batch(mutations)

    async def invalidate(self, tags: Iterable[Tag]) -> list[QueryKey]:
        return await self._index.invalidate(tags)

    # Lifecycle

    def clear(self) -> None:
        """Drop every cached entry."""
        self._store.clear()

    async def close(self) -> None:
        await self._transport.close()

    async def __aenter__(self) -> ResourceClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def create_client(
    *,
    transport: AsyncResourceTransport,
    max_entries: int | None = 100,
    stale_after: Duration | None = "5m",
    identities: Mapping[str, IdentityMatch] | None = None,
) -> ResourceClient:
    """Create a client.

    Args:
        transport: Upstream resource server
        max_entries: LRU bound on cached pages (observed pages never evicted)
        stale_after: Age after which a cached page is refetched on access
        identities: Per resource type duplicate test for optimistic records

    Returns:
        ResourceClient with query, mutate, batch, invalidate and close
    """
    return ResourceClient(
        transport,
        max_entries=max_entries,
        stale_after=stale_after,
        identities=identities,
    )


__all__ = ["ResourceClient", "create_client"]
