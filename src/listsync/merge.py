"""Reconcile locally-pending records with server-confirmed ones.

Optimistic records carry temporary identifiers that never equal the ids the
server assigns, so "the server has caught up" is decided by an identity
predicate over record contents instead of by id.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from listsync.duration import parse_duration
from listsync.types import Duration, ResourceRecord

IdentityMatch = Callable[[ResourceRecord, ResourceRecord], bool]
SortKey = Callable[[ResourceRecord], Any]


def same_id(local: ResourceRecord, server: ResourceRecord) -> bool:
    """Default identity: equal, server-assigned ids."""
    return not local.is_temporary and local.id == server.id


def parse_instant(value: Any) -> datetime | None:
    """Parse a FHIR dateTime/instant. Naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def effective_time(record: ResourceRecord) -> datetime | None:
    payload = record.payload
    for field in ("effectiveDateTime", "effectiveInstant", "issued"):
        parsed = parse_instant(payload.get(field))
        if parsed is not None:
            return parsed
    period = payload.get("effectivePeriod") or {}
    return parse_instant(period.get("start"))


def by_effective_time(record: ResourceRecord) -> tuple[bool, datetime | None]:
    """Sort key placing records without a time after those with one."""
    when = effective_time(record)
    return (when is not None, when)


def _codes(concept: Any) -> set[str]:
    if not isinstance(concept, dict):
        return set()
    return {
        str(coding["code"])
        for coding in concept.get("coding") or ()
        if isinstance(coding, dict) and coding.get("code")
    }


def observation_codes(record: ResourceRecord) -> frozenset[str]:
    """Top-level codes plus component codes."""
    codes = _codes(record.payload.get("code"))
    for component in record.payload.get("component") or ():
        if isinstance(component, dict):
            codes |= _codes(component.get("code"))
    return frozenset(codes)


class ObservationIdentity:
    """Heuristic duplicate test for observations.

    Two observations match when they share subject, code set, and have
    effective times within ``window`` of each other. This is an approximation:
    two genuinely distinct readings taken close together will be merged.
    """

    def __init__(self, window: Duration = "5m") -> None:
        self._window = timedelta(milliseconds=parse_duration(window))

    def __call__(self, local: ResourceRecord, server: ResourceRecord) -> bool:
        if same_id(local, server):
            return True
        if local.resource_type != server.resource_type:
            return False
        if _subject(local) != _subject(server):
            return False
        codes = observation_codes(local)
        if not codes or codes != observation_codes(server):
            return False
        local_time = effective_time(local)
        server_time = effective_time(server)
        if local_time is None or server_time is None:
            return False
        return abs(local_time - server_time) <= self._window


def _subject(record: ResourceRecord) -> str | None:
    subject = record.payload.get("subject") or {}
    return subject.get("reference") if isinstance(subject, dict) else None


def unconfirmed(
    server: Iterable[ResourceRecord],
    local: Iterable[ResourceRecord],
    identity: IdentityMatch = same_id,
) -> list[ResourceRecord]:
    """Local records not yet represented on the server (or earlier in ``local``)."""
    server = list(server)
    kept: list[ResourceRecord] = []
    for record in local:
        if any(identity(record, s) for s in server):
            continue
        if any(identity(record, k) or identity(k, record) for k in kept):
            continue
        kept.append(record)
    return kept


def merge(
    server: Sequence[ResourceRecord],
    local: Sequence[ResourceRecord],
    *,
    identity: IdentityMatch = same_id,
    sort_key: SortKey | None = None,
    descending: bool = True,
) -> list[ResourceRecord]:
    """Build the display set for one collection.

    Local records matched by a server record are dropped, the rest are placed
    before the server records, and the result is optionally sorted by
    ``sort_key`` (ties keep insertion order). Pure; call it on every render.
    """
    combined = unconfirmed(server, local, identity) + list(server)
    if sort_key is not None:
        # list.sort is stable with reverse=True too
        combined.sort(key=sort_key, reverse=descending)
    return combined
