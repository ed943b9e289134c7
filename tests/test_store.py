"""Tests for the cache store."""

import pytest

from listsync import CacheStore, QueryKey, TagIndex, create_client


def _key(n: int) -> QueryKey:
    return QueryKey("Patient", offset=n * 10)


class TestEviction:
    """Tests for LRU eviction."""

    def test_evicts_least_recently_used(self) -> None:
        store = CacheStore(max_entries=2)
        store.get_or_create(_key(0))
        store.get_or_create(_key(1))
        store.get(_key(0))  # touch
        store.get_or_create(_key(2))

        assert _key(0) in store
        assert _key(1) not in store
        assert _key(2) in store

    def test_observed_entries_are_kept(self) -> None:
        store = CacheStore(max_entries=1)
        store.observe(_key(0), lambda projection: None)
        store.get_or_create(_key(1))

        assert _key(0) in store
        assert _key(1) in store

    def test_fetching_entries_are_kept(self) -> None:
        store = CacheStore(max_entries=1)
        store.get_or_create(_key(0)).is_fetching = True
        store.get_or_create(_key(1))
        assert _key(0) in store

    def test_unbounded(self) -> None:
        store = CacheStore(max_entries=None)
        for n in range(50):
            store.get_or_create(_key(n))
        assert len(store) == 50

    def test_invalid_bound(self) -> None:
        with pytest.raises(ValueError):
            CacheStore(max_entries=0)

    def test_eviction_removes_tags(self) -> None:
        store = CacheStore(max_entries=1)
        index = TagIndex(store)
        index.tag(_key(0), [("Patient",)])
        index.tag(_key(1), [("Patient",)])

        assert _key(0) not in store
        assert index.keys_for([("Patient",)]) == [_key(1)]
        assert index.tags_for(_key(0)) == set()

    async def test_eviction_drops_read_sequence(self, transport) -> None:
        transport.seed("Patient", [{"id": "p1"}])
        client = create_client(transport=transport, max_entries=1, stale_after=None)
        await client.query(_key(0))
        await client.refetch(_key(0))
        assert client.store.get(_key(0)).issued_seq == 2

        await client.query(_key(1))
        assert _key(0) not in client.store
        await client.query(_key(0))

        entry = client.store.get(_key(0))
        assert entry.issued_seq == 1
        assert entry.applied_seq == 1
        assert [r.id for r in entry.records] == ["p1"]


class TestObservers:
    """Tests for observe/notify."""

    def test_notify_pushes_projection(self) -> None:
        store = CacheStore()
        seen = []
        store.observe(_key(0), seen.append)
        store.get(_key(0)).continuation_cursor = "next"
        store.notify([_key(0)])

        assert len(seen) == 1
        assert seen[0].has_next_page

    def test_unsubscribe(self) -> None:
        store = CacheStore()
        seen = []
        unsubscribe = store.observe(_key(0), seen.append)
        assert store.is_observed(_key(0))

        unsubscribe()
        store.notify([_key(0)])
        assert seen == []
        assert not store.is_observed(_key(0))

    def test_observer_count(self) -> None:
        store = CacheStore()
        for _ in range(3):
            store.observe(_key(0), lambda projection: None)
        assert store.observer_count(_key(0)) == 3

    def test_clear(self) -> None:
        store = CacheStore()
        store.get_or_create(_key(0))
        store.clear()
        assert len(store) == 0
