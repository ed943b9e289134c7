"""End-to-end tests for ResourceClient."""

import asyncio

import pytest
from helpers import FlakyTransport, ids, make_bp

from listsync import (
    AsyncMemoryTransport,
    ObservationIdentity,
    QueryKey,
    ResourceClient,
    ResourceRecord,
    by_effective_time,
    create_client,
    define_tags,
)

tags = define_tags(
    {
        "patients": lambda: ("Patient",),
        "observations": lambda patient_id: ("Observation", "patient", patient_id),
    }
)


class TestCreateClient:
    def test_defaults(self) -> None:
        client = create_client(transport=AsyncMemoryTransport())
        assert isinstance(client, ResourceClient)
        identity = client.engine.identity_for("Observation")
        assert isinstance(identity, ObservationIdentity)

    def test_rejects_bad_bound(self) -> None:
        with pytest.raises(ValueError):
            create_client(transport=AsyncMemoryTransport(), max_entries=0)

    def test_rejects_bad_duration(self) -> None:
        with pytest.raises(ValueError):
            create_client(transport=AsyncMemoryTransport(), stale_after="soon")

    def test_custom_identities(self) -> None:
        client = create_client(
            transport=AsyncMemoryTransport(), identities={"Patient": lambda a, b: True}
        )
        assert not isinstance(
            client.engine.identity_for("Observation"), ObservationIdentity
        )


class TestLifecycle:
    async def test_context_manager_closes_transport(self) -> None:
        transport = FlakyTransport()
        async with create_client(transport=transport) as client:
            await client.query(QueryKey("Patient"))
        assert transport.closed

    async def test_clear_drops_entries(
        self, client: ResourceClient, seeded, patients_key
    ) -> None:
        await client.query(patients_key)
        client.clear()

        assert len(client.store) == 0
        assert client.tags.keys_for([tags["patients"]()]) == []


class TestPagingFlow:
    """A patient table: page, sort, search."""

    async def test_sort_change_starts_from_first_page(
        self, client: ResourceClient, seeded, patients_key
    ) -> None:
        await client.query(patients_key)
        await client.advance(patients_key)

        newest_first = patients_key.with_sort("_lastUpdated", descending=True)
        view = await client.query(newest_first)

        assert view.page_index == 0
        assert ids(view.records)[0] == "p25"

    async def test_search_filters(
        self, client: ResourceClient, seeded, patients_key
    ) -> None:
        view = await client.query(patients_key.with_search("Patient 1"))

        assert ids(view.records) == [f"p{i}" for i in range(10, 20)]

    def test_key_from_params(self, patients_key) -> None:
        key = QueryKey.from_params(
            "Patient", {"_sort": "_lastUpdated", "_count": "10", "_getpagesoffset": "0"}
        )

        assert key == patients_key


class TestObservationFlow:
    """Recording readings for one patient."""

    @pytest.fixture
    def key(self) -> QueryKey:
        return QueryKey.of("Observation", params={"patient": "p1"}, sort_field="date")

    async def test_create_then_refetch_after_invalidation(
        self, client: ResourceClient, transport, key
    ) -> None:
        transport.seed("Observation", [make_bp("p1", "2024-05-01T10:00:00")])
        snapshots = []
        client.watch(key, snapshots.append)
        await client.query(key, tags=[tags["observations"]("p1")])

        outcome = await client.create(
            "Observation",
            make_bp("p1", "2024-05-02T10:00:00"),
            tags=[tags["observations"]("p1")],
        )

        view = client.view(key)
        assert ids(view.records) == [outcome.record.id, "1"]
        assert not view.is_stale
        assert any(any(r.is_temporary for r in s.records) for s in snapshots)

    async def test_other_patient_untouched(
        self, client: ResourceClient, transport, key
    ) -> None:
        other = QueryKey.of("Observation", params={"patient": "p2"}, sort_field="date")
        await client.query(key)
        await client.query(other)

        await client.create(
            "Observation",
            make_bp("p1", "2024-05-02T10:00:00"),
            tags=[tags["observations"]("p1")],
        )

        assert not client.lists.entry(other).stale
        assert client.lists.entry(key).stale

    async def test_display_merges_local_readings(
        self, client: ResourceClient, transport, key
    ) -> None:
        transport.seed(
            "Observation",
            [
                make_bp("p1", "2024-05-01T10:00:00"),
                make_bp("p1", "2024-05-03T10:00:00"),
            ],
        )
        await client.query(key)
        local = [
            # Already on the server, within the identity window
            ResourceRecord.from_resource(
                {**make_bp("p1", "2024-05-03T10:02:00"), "id": "temp-a"}
            ),
            ResourceRecord.from_resource(
                {**make_bp("p1", "2024-05-02T10:00:00"), "id": "temp-b"}
            ),
        ]

        shown = client.display(key, local, sort_key=by_effective_time)

        assert ids(shown) == ["2", "temp-b", "1"]

    async def test_update_and_delete(
        self, client: ResourceClient, transport, key
    ) -> None:
        transport.seed("Observation", [make_bp("p1", "2024-05-01T10:00:00")])
        await client.query(key)

        updated = await client.update(
            "Observation", "1", make_bp("p1", "2024-05-01T10:00:00", systolic=140)
        )
        assert updated.record.payload["component"][0]["valueQuantity"]["value"] == 140

        await client.delete("Observation", "1")
        view = await client.query(key)
        assert view.records == ()
        assert transport.resources("Observation") == []

    async def test_manual_invalidate(
        self, client: ResourceClient, transport, key
    ) -> None:
        await client.query(key)
        transport.seed("Observation", [make_bp("p1", "2024-05-01T10:00:00")])

        stale = await client.invalidate([("Observation",)])
        view = await client.query(key)

        assert stale == [key]
        assert ids(view.records) == ["1"]

    async def test_concurrent_mutations_and_reads(
        self, client: ResourceClient, transport, key
    ) -> None:
        client.watch(key, lambda projection: None)
        await client.query(key)

        await asyncio.gather(
            *(
                client.create(
                    "Observation",
                    make_bp("p1", f"2024-05-0{i}T10:00:00"),
                    tags=[tags["observations"]("p1")],
                )
                for i in range(1, 5)
            ),
            client.refetch(key),
        )
        view = await client.refetch(key)

        assert len(view.records) == 4
        assert not any(r.is_temporary for r in view.records)
