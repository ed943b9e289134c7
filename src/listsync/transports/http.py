"""FHIR REST transport over httpx."""

from __future__ import annotations

from typing import Any, cast

import httpx

from listsync.exceptions import NetworkFailure, ServerRejection, StaleCursorFailure
from listsync.types import (
    BatchItemResult,
    Mutation,
    MutationKind,
    Page,
    QueryKey,
    ResourceRecord,
)

_STALE_CURSOR_STATUSES = frozenset({400, 404, 410})


def parse_bundle(bundle: dict[str, Any]) -> Page:
    """Extract records, the ``next`` link and the total from a search Bundle."""
    records = [
        ResourceRecord.from_resource(entry["resource"])
        for entry in bundle.get("entry") or ()
        if isinstance(entry.get("resource"), dict) and "id" in entry["resource"]
    ]
    next_cursor = None
    for link in bundle.get("link") or ():
        if link.get("relation") == "next" and link.get("url"):
            next_cursor = link["url"]
            break
    return Page(records=records, next_cursor=next_cursor, total=bundle.get("total"))


def outcome_reason(outcome: Any, default: str) -> str:
    """Pick a machine-readable reason out of an OperationOutcome."""
    if not isinstance(outcome, dict):
        return default
    for issue in outcome.get("issue") or ():
        details = issue.get("details") or {}
        for coding in details.get("coding") or ():
            if coding.get("code"):
                return str(coding["code"])
        if issue.get("code"):
            return str(issue["code"])
    return default


def _status_code(status: str) -> int:
    # Batch sub-responses carry e.g. "201 Created"
    try:
        return int(str(status).split()[0])
    except (ValueError, IndexError):
        return 0


def _location_id(location: str | None) -> str | None:
    # "Observation/123/_history/1" -> "123"
    if not location:
        return None
    parts = location.strip("/").split("/")
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    return parts[-1] if len(parts) >= 2 else None


def _request_body(mutation: Mutation) -> dict[str, Any]:
    body = dict(mutation.payload)
    body["resourceType"] = mutation.resource_type
    if mutation.kind is MutationKind.CREATE:
        body.pop("id", None)
    else:
        body["id"] = mutation.target_id
    return body


class AsyncFhirTransport:
    """Talks to a FHIR R4 server.

    Reads use search parameters from the QueryKey; continuation uses the
    Bundle's ``next`` link verbatim. Batches are a ``batch`` Bundle posted to
    the base URL, with sub-responses correlated by position.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Accept": "application/fhir+json",
                "Content-Type": "application/fhir+json",
                **(headers or {}),
            },
            timeout=timeout,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        cursor: bool = False,
    ) -> dict[str, Any] | None:
        """Make a request, mapping failures onto the error taxonomy."""
        try:
            response = await self._client.request(method, url, params=params, json=body)
        except httpx.TransportError as e:
            raise NetworkFailure(f"{method} {url}: {e}") from e

        if not response.is_success:
            try:
                details = response.json()
            except ValueError:
                details = None
            reason = outcome_reason(details, f"HTTP {response.status_code}")
            if cursor and response.status_code in _STALE_CURSOR_STATUSES:
                raise StaleCursorFailure(
                    reason, status=response.status_code, details=details
                )
            raise ServerRejection(reason, status=response.status_code, details=details)

        # 204 No Content, e.g. a successful delete
        if response.status_code == 204 or not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise ServerRejection(
                "response body is not JSON", status=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise ServerRejection(
                "response body is not a JSON object", status=response.status_code
            )
        return cast(dict[str, Any], data)

    async def fetch_page(self, key: QueryKey, cursor: str | None) -> Page:
        if cursor is not None:
            data = await self._request("GET", cursor, cursor=True)
        else:
            data = await self._request("GET", key.resource, params=key.to_params())
        return parse_bundle(data or {})

    async def send(self, mutation: Mutation) -> ResourceRecord | None:
        if mutation.kind is MutationKind.CREATE:
            data = await self._request(
                "POST", mutation.resource_type, body=_request_body(mutation)
            )
        elif mutation.kind is MutationKind.UPDATE:
            data = await self._request(
                "PUT",
                f"{mutation.resource_type}/{mutation.target_id}",
                body=_request_body(mutation),
            )
        else:
            await self._request(
                "DELETE", f"{mutation.resource_type}/{mutation.target_id}"
            )
            return None

        if not data or "id" not in data:
            raise ServerRejection("response carried no resource id")
        resource = {**_request_body(mutation), **data}
        return ResourceRecord.from_resource(resource)

    async def send_batch(self, mutations: list[Mutation]) -> list[BatchItemResult]:
        bundle = {
            "resourceType": "Bundle",
            "type": "batch",
            "entry": [
                self._batch_entry(index, mutation)
                for index, mutation in enumerate(mutations)
            ],
        }
        data = await self._request("POST", "", body=bundle) or {}
        entries = data.get("entry") or []
        if len(entries) != len(mutations):
            raise ServerRejection(
                f"batch returned {len(entries)} results for {len(mutations)} requests",
                details=data,
            )
        return [
            self._batch_result(mutation, entry)
            for mutation, entry in zip(mutations, entries)
        ]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _batch_entry(index: int, mutation: Mutation) -> dict[str, Any]:
        if mutation.kind is MutationKind.CREATE:
            request = {"method": "POST", "url": mutation.resource_type}
        elif mutation.kind is MutationKind.UPDATE:
            request = {
                "method": "PUT",
                "url": f"{mutation.resource_type}/{mutation.target_id}",
            }
        else:
            request = {
                "method": "DELETE",
                "url": f"{mutation.resource_type}/{mutation.target_id}",
            }
            return {"fullUrl": f"urn:uuid:{index}", "request": request}
        return {
            "fullUrl": f"urn:uuid:{index}",
            "resource": _request_body(mutation),
            "request": request,
        }

    @staticmethod
    def _batch_result(mutation: Mutation, entry: dict[str, Any]) -> BatchItemResult:
        response = entry.get("response") or {}
        status = _status_code(response.get("status", ""))
        if not 200 <= status < 300:
            outcome = response.get("outcome") or entry.get("resource")
            return BatchItemResult(
                error=ServerRejection(
                    outcome_reason(outcome, f"HTTP {status}"),
                    status=status or None,
                    details=outcome,
                )
            )
        if mutation.kind is MutationKind.DELETE:
            return BatchItemResult()

        resource = entry.get("resource")
        if not isinstance(resource, dict) or "id" not in resource:
            resource_id = _location_id(response.get("location"))
            if resource_id is None:
                return BatchItemResult(
                    error=ServerRejection("sub-response carried no resource id")
                )
            resource = {**_request_body(mutation), "id": resource_id}
        return BatchItemResult(
            record=ResourceRecord.from_resource({**_request_body(mutation), **resource})
        )
