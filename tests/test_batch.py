"""Tests for batch submission and the sequential fallback."""

import asyncio

import httpx
import pytest
import respx
from helpers import ids, make_bp

from listsync import (
    AsyncFhirTransport,
    Mutation,
    MutationState,
    NetworkFailure,
    PartialBatchFailure,
    QueryKey,
    ResourceClient,
    ServerRejection,
    create_client,
)

BP_TAG = ("Observation", "patient", "p1")


@pytest.fixture
def observations_key() -> QueryKey:
    return QueryKey.of("Observation", params={"patient": "p1"}, sort_field="date")


def readings(count: int) -> list[Mutation]:
    return [
        Mutation.create(
            "Observation",
            make_bp("p1", f"2024-05-01T{10 + i:02d}:00:00", systolic=110 + i),
            tags=[BP_TAG],
        )
        for i in range(count)
    ]


class TestBatch:
    """Single round trip when the server accepts batches."""

    async def test_all_committed(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)

        result = await client.submit_batch(readings(3))

        assert result.ok
        assert not result.used_fallback
        assert len(result.committed) == 3
        assert transport.count_calls("send_batch") == 1
        assert transport.count_calls("send") == 0
        records = client.lists.entry(observations_key).records
        assert not any(r.is_temporary for r in records)
        assert len(records) == 3

    async def test_sub_response_failure_rolls_back_only_that_item(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        mutations = readings(2) + [Mutation.delete("Observation", "missing")]

        result = await client.submit_batch(mutations)

        assert not result.used_fallback
        assert [o.state for o in result.outcomes] == [
            MutationState.COMMITTED,
            MutationState.COMMITTED,
            MutationState.ROLLED_BACK,
        ]
        assert isinstance(result.outcomes[2].error, ServerRejection)
        with pytest.raises(PartialBatchFailure, match="1 of 3"):
            result.raise_for_failures()

    async def test_optimistic_before_response(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        gate = asyncio.Event()
        original = transport.send_batch

        async def slow_batch(mutations):
            await gate.wait()
            return await original(mutations)

        transport.send_batch = slow_batch
        task = asyncio.create_task(client.submit_batch(readings(2)))
        await asyncio.sleep(0.01)

        assert len(client.view(observations_key).records) == 2
        assert all(r.is_temporary for r in client.view(observations_key).records)
        gate.set()
        await task

    async def test_empty_batch(self, client: ResourceClient, transport) -> None:
        result = await client.submit_batch([])

        assert result.outcomes == ()
        assert transport.calls == []


class TestFallback:
    """Sequential one-at-a-time submission when the batch call fails."""

    async def test_partial_failure(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        before = client.lists.entry(observations_key).stale_marks
        transport.fail_batch = True
        transport.fail_sends = {7}

        result = await client.submit_batch(readings(10))

        assert result.used_fallback
        assert len(result.committed) == 9
        assert len(result.rolled_back) == 1
        assert result.outcomes[6].state is MutationState.ROLLED_BACK
        assert isinstance(result.outcomes[6].error, NetworkFailure)
        assert transport.max_sends_in_flight == 1

        entry = client.lists.entry(observations_key)
        assert entry.stale_marks == before + 1
        assert len(entry.records) == 9
        assert not any(r.is_temporary for r in entry.records)
        with pytest.raises(PartialBatchFailure) as excinfo:
            result.raise_for_failures()
        assert len(excinfo.value.outcomes) == 10

    async def test_submission_order(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        transport.fail_batch = True

        result = await client.submit_batch(readings(3))

        assert result.ok
        assert ids(o.record for o in result.outcomes) == ["1", "2", "3"]
        assert [c[0] for c in transport.calls[-3:]] == ["send", "send", "send"]

    async def test_all_fail(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        before = client.lists.entry(observations_key).snapshot()
        transport.fail_batch = True
        transport.fail_sends = {1, 2}

        result = await client.submit_batch(readings(2))

        assert len(result.rolled_back) == 2
        entry = client.lists.entry(observations_key)
        assert entry.snapshot() == before
        assert entry.stale_marks == 0

    async def test_cancellation_rolls_back_remaining(
        self, client: ResourceClient, transport, observations_key
    ) -> None:
        await client.query(observations_key)
        before = client.lists.entry(observations_key).snapshot()
        transport.fail_batch = True
        transport.send_gate = asyncio.Event()

        task = asyncio.create_task(client.submit_batch(readings(3)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.lists.entry(observations_key).snapshot() == before
        assert client.engine.pending == []


class TestFallbackOverHttp:
    """The FHIR transport's batch errors trigger the fallback."""

    @respx.mock
    async def test_garbled_batch_response_falls_back(self) -> None:
        respx.post("https://fhir.test/fhir/").mock(
            return_value=httpx.Response(200, text="not json")
        )
        respx.post("https://fhir.test/fhir/Patient").mock(
            return_value=httpx.Response(
                201, json={"resourceType": "Patient", "id": "9"}
            )
        )
        client = create_client(transport=AsyncFhirTransport("https://fhir.test/fhir"))

        result = await client.submit_batch([Mutation.create("Patient", {})])

        assert result.used_fallback
        assert result.ok
        assert result.outcomes[0].record.id == "9"
        await client.close()
