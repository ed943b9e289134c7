"""Test doubles and payload builders shared by the test modules."""

import asyncio
from typing import Any

from listsync import (
    AsyncMemoryTransport,
    Mutation,
    NetworkFailure,
    Page,
    QueryKey,
    ResourceRecord,
)


class FlakyTransport(AsyncMemoryTransport):
    """Memory transport with switchable failures and gates."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.fail_reads = 0
        self.fail_sends: set[int] = set()
        self.fail_batch = False
        self.send_gate: asyncio.Event | None = None
        self.read_gates: dict[str, asyncio.Event] = {}
        # One-shot: the next read for a cursor waits here after computing its page
        self.read_holds: dict[str, asyncio.Event] = {}
        self.send_count = 0
        self.sends_in_flight = 0
        self.max_sends_in_flight = 0
        self.closed = False

    async def fetch_page(self, key: QueryKey, cursor: str | None) -> Page:
        gate = self.read_gates.get(cursor or "")
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        if self.fail_reads:
            self.fail_reads -= 1
            self.calls.append(("fetch_page", cursor or ""))
            raise NetworkFailure("connection reset")
        page = await super().fetch_page(key, cursor)
        hold = self.read_holds.pop(cursor or "", None)
        if hold is not None:
            await hold.wait()
        return page

    async def send(self, mutation: Mutation) -> ResourceRecord | None:
        self.send_count += 1
        number = self.send_count
        self.sends_in_flight += 1
        self.max_sends_in_flight = max(self.max_sends_in_flight, self.sends_in_flight)
        try:
            if self.send_gate is not None:
                await self.send_gate.wait()
            if number in self.fail_sends:
                self.calls.append(("send", mutation.kind.value))
                raise NetworkFailure(f"send #{number} failed")
            return await super().send(mutation)
        finally:
            self.sends_in_flight -= 1

    async def send_batch(self, mutations: list[Mutation]) -> list:
        if self.fail_batch:
            self.calls.append(("send_batch", str(len(mutations))))
            raise NetworkFailure("batch endpoint unreachable")
        return await super().send_batch(mutations)

    async def close(self) -> None:
        self.closed = True


def make_patients(count: int) -> list[dict[str, Any]]:
    """Patients p01..pNN, lastUpdated increasing with the number."""
    return [
        {
            "id": f"p{i:02d}",
            "name": [{"text": f"Patient {i:02d}"}],
            "meta": {"lastUpdated": f"2024-01-01T00:{i:02d}:00+00:00"},
        }
        for i in range(1, count + 1)
    ]


def make_bp(patient_id: str, when: str, systolic: int = 120) -> dict[str, Any]:
    """A blood-pressure observation payload."""
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": "85354-9"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "effectiveDateTime": when,
        "component": [
            {
                "code": {"coding": [{"code": "8480-6"}]},
                "valueQuantity": {"value": systolic, "unit": "mmHg"},
            },
            {
                "code": {"coding": [{"code": "8462-4"}]},
                "valueQuantity": {"value": 80, "unit": "mmHg"},
            },
        ],
    }


def ids(records: Any) -> list[str]:
    return [r.id for r in records]
