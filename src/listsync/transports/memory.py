"""In-memory resource server (async only)."""

from __future__ import annotations

import asyncio
import base64
import json
from datetime import datetime, timezone
from typing import Any

from listsync.exceptions import ServerRejection, StaleCursorFailure
from listsync.types import (
    BatchItemResult,
    Mutation,
    MutationKind,
    Page,
    QueryKey,
    ResourceRecord,
)


def _encode_cursor(offset: int, version: int) -> str:
    raw = json.dumps({"o": offset, "v": version}).encode()
    return base64.urlsafe_b64encode(raw).decode()


def _decode_cursor(cursor: str) -> tuple[int, int]:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return int(data["o"]), int(data["v"])
    except (ValueError, KeyError, TypeError) as e:
        raise StaleCursorFailure("invalid cursor", status=400) from e


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _name_text(resource: dict[str, Any]) -> str:
    parts: list[str] = []
    for name in resource.get("name") or ():
        parts.append(name.get("text", ""))
        parts.append(name.get("family", ""))
        parts.extend(name.get("given") or ())
    return " ".join(p for p in parts if p).lower()


def _sort_value(resource: dict[str, Any], field: str) -> Any:
    if field == "_lastUpdated":
        return (resource.get("meta") or {}).get("lastUpdated")
    if field == "date":
        return resource.get("effectiveDateTime")
    value = resource.get(field)
    return value if isinstance(value, (str, int, float)) else None


def _matches_param(resource: dict[str, Any], name: str, value: str) -> bool:
    if name in ("patient", "subject"):
        reference = (resource.get("subject") or {}).get("reference", "")
        return reference in (value, f"Patient/{value}")
    return str(resource.get(name)) == value


class AsyncMemoryTransport:
    """Resource server kept in process memory.

    Issues opaque cursors. With ``strict_cursors`` a cursor is refused once
    the collection it was issued for has gained or lost records. With
    ``report_totals=False`` pages carry no total, like large servers.
    """

    def __init__(
        self,
        *,
        strict_cursors: bool = False,
        report_totals: bool = True,
        latency: float = 0.0,
    ) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._versions: dict[str, int] = {}
        self._next_id = 1
        self._strict_cursors = strict_cursors
        self._report_totals = report_totals
        self._latency = latency
        self.calls: list[tuple[str, str]] = []

    def seed(self, resource_type: str, resources: list[dict[str, Any]]) -> list[str]:
        """Insert resources directly, without recording a call. Returns ids."""
        ids = []
        for resource in resources:
            ids.append(self._insert(resource_type, resource))
        return ids

    def resources(self, resource_type: str) -> list[dict[str, Any]]:
        return list(self._collections.get(resource_type, {}).values())

    def count_calls(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    async def fetch_page(self, key: QueryKey, cursor: str | None) -> Page:
        self.calls.append(("fetch_page", cursor or ""))
        await asyncio.sleep(self._latency)

        version = self._versions.get(key.resource, 0)
        if cursor is None:
            offset = key.offset
        else:
            offset, issued_for = _decode_cursor(cursor)
            if self._strict_cursors and issued_for != version:
                raise StaleCursorFailure("collection changed", status=410)

        rows = self._query(key)
        window = rows[offset : offset + key.page_size]
        end = offset + key.page_size
        return Page(
            records=[ResourceRecord.from_resource(r) for r in window],
            next_cursor=_encode_cursor(end, version) if end < len(rows) else None,
            total=len(rows) if self._report_totals else None,
        )

    async def send(self, mutation: Mutation) -> ResourceRecord | None:
        self.calls.append(("send", mutation.kind.value))
        await asyncio.sleep(self._latency)
        return self._apply(mutation)

    async def send_batch(self, mutations: list[Mutation]) -> list[BatchItemResult]:
        self.calls.append(("send_batch", str(len(mutations))))
        await asyncio.sleep(self._latency)
        results = []
        for mutation in mutations:
            try:
                results.append(BatchItemResult(record=self._apply(mutation)))
            except ServerRejection as e:
                results.append(BatchItemResult(error=e))
        return results

    async def close(self) -> None:
        """Nothing to release."""
        pass

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _query(self, key: QueryKey) -> list[dict[str, Any]]:
        rows = list(self._collections.get(key.resource, {}).values())
        if key.search:
            needle = key.search.lower()
            rows = [r for r in rows if needle in _name_text(r)]
        for name, value in key.params:
            rows = [r for r in rows if _matches_param(r, name, value)]
        present = [r for r in rows if _sort_value(r, key.sort_field) is not None]
        missing = [r for r in rows if _sort_value(r, key.sort_field) is None]
        present.sort(
            key=lambda r: _sort_value(r, key.sort_field), reverse=key.descending
        )
        return present + missing

    def _insert(self, resource_type: str, resource: dict[str, Any]) -> str:
        resource_id = str(resource.get("id") or self._allocate_id())
        stored = dict(resource, id=resource_id, resourceType=resource_type)
        stored.setdefault("meta", {"lastUpdated": _now()})
        self._collections.setdefault(resource_type, {})[resource_id] = stored
        self._versions[resource_type] = self._versions.get(resource_type, 0) + 1
        return resource_id

    def _allocate_id(self) -> str:
        resource_id = str(self._next_id)
        self._next_id += 1
        return resource_id

    def _apply(self, mutation: Mutation) -> ResourceRecord | None:
        collection = self._collections.setdefault(mutation.resource_type, {})
        if mutation.kind is MutationKind.CREATE:
            payload = {k: v for k, v in mutation.payload.items() if k != "id"}
            payload["meta"] = {"lastUpdated": _now()}
            resource_id = self._insert(mutation.resource_type, payload)
            return ResourceRecord.from_resource(collection[resource_id])

        if mutation.target_id not in collection:
            raise ServerRejection(
                f"{mutation.resource_type}/{mutation.target_id} not found",
                status=404,
            )
        if mutation.kind is MutationKind.UPDATE:
            stored = dict(mutation.payload)
            stored.update(
                id=mutation.target_id,
                resourceType=mutation.resource_type,
                meta={"lastUpdated": _now()},
            )
            collection[mutation.target_id] = stored
            return ResourceRecord.from_resource(stored)

        del collection[mutation.target_id]
        self._versions[mutation.resource_type] += 1
        return None
