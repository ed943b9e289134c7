"""Optimistic mutation engine.

Each mutation moves ``pending -> committed | rolled_back``. While pending, its
OptimisticPatch records every change made to cached pages so it can be undone
as plain data, without touching changes made by other in-flight mutations.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace

from listsync.exceptions import MutationStateError
from listsync.invalidation import TagIndex
from listsync.list_cache import PaginatedListCache
from listsync.merge import IdentityMatch, merge, same_id
from listsync.store import CacheStore
from listsync.transports.base import AsyncResourceTransport
from listsync.types import (
    CacheEntry,
    Mutation,
    MutationKind,
    MutationOutcome,
    MutationState,
    OptimisticPatch,
    PatchOp,
    QueryKey,
    ResourceRecord,
)

logger = logging.getLogger(__name__)


def _find(records: list[ResourceRecord], record_id: str) -> int | None:
    for index, record in enumerate(records):
        if record.id == record_id:
            return index
    return None


class PendingMutation:
    """A submitted mutation and the patch that can undo it."""

    __slots__ = ("mutation", "patch", "state", "seq")

    def __init__(self, mutation: Mutation, patch: OptimisticPatch, seq: int) -> None:
        self.mutation = mutation
        self.patch = patch
        self.state = MutationState.PENDING
        self.seq = seq

    def __repr__(self) -> str:
        return (
            f"PendingMutation({self.mutation.kind.value} "
            f"{self.mutation.resource_type}/{self.mutation.target_id}, "
            f"{self.state.value})"
        )


class OptimisticMutationEngine:
    """Applies speculative changes to cached pages and settles them."""

    def __init__(
        self,
        store: CacheStore,
        index: TagIndex,
        lists: PaginatedListCache,
        transport: AsyncResourceTransport,
        *,
        identities: Mapping[str, IdentityMatch] | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._transport = transport
        self._identities = dict(identities or {})
        self._pending: dict[int, PendingMutation] = {}
        self._seq = 0
        lists.set_page_hook(self.reapply)

    @property
    def pending(self) -> list[PendingMutation]:
        """In-flight mutations in submission order."""
        return list(self._pending.values())

    def identity_for(self, resource_type: str) -> IdentityMatch:
        return self._identities.get(resource_type, same_id)

    def begin(self, mutation: Mutation) -> PendingMutation:
        """Apply ``mutation`` to every cached page carrying its tags."""
        ops: list[PatchOp] = []
        for key in self._index.keys_for(mutation.affected_tags):
            entry = self._store.get(key)
            if entry is None:
                continue
            op = self._apply(entry, mutation)
            if op is not None:
                ops.append(op)

        self._seq += 1
        patch = OptimisticPatch(mutation, tuple(ops))
        pending = PendingMutation(mutation, patch, self._seq)
        self._pending[pending.seq] = pending
        # One notification per key, after every page is patched
        self._store.notify([op.key for op in ops])
        return pending

    def commit(
        self, pending: PendingMutation, record: ResourceRecord | None = None
    ) -> MutationOutcome:
        """Keep the optimistic state, swapping in the server's record if given."""
        self._settle(pending, MutationState.COMMITTED)
        if record is not None and pending.mutation.kind is not MutationKind.DELETE:
            for op in pending.patch.ops:
                entry = self._store.get(op.key)
                if entry is not None:
                    self._confirm(entry, op.record_id, record)
            self._store.notify(pending.patch.keys)
        return MutationOutcome(pending.mutation, MutationState.COMMITTED, record=record)

    def rollback(
        self, pending: PendingMutation, error: BaseException
    ) -> MutationOutcome:
        """Undo this mutation's changes, newest first."""
        self._settle(pending, MutationState.ROLLED_BACK)
        logger.warning(
            "Rolling back %s %s/%s: %s",
            pending.mutation.kind.value,
            pending.mutation.resource_type,
            pending.mutation.target_id,
            error,
        )
        for op in reversed(pending.patch.ops):
            entry = self._store.get(op.key)
            if entry is not None:
                self._revert(entry, op, pending.seq)
        self._store.notify(pending.patch.keys)
        return MutationOutcome(pending.mutation, MutationState.ROLLED_BACK, error=error)

    async def submit(self, mutation: Mutation) -> MutationOutcome:
        """Apply optimistically, send, then commit or roll back.

        On success the affected tags are invalidated so the next read
        replaces speculative state. On failure the cache is restored, tags
        are left alone and the error is raised.
        """
        pending = self.begin(mutation)
        try:
            record = await self._transport.send(mutation)
        except BaseException as e:
            self.rollback(pending, e)
            raise
        outcome = self.commit(pending, record)
        await self._index.invalidate(mutation.affected_tags)
        return outcome

    def reapply(
        self, key: QueryKey, records: list[ResourceRecord]
    ) -> list[ResourceRecord]:
        """Lay still-pending changes over a freshly fetched page.

        Each reapplied op now displaces the refetched server record, so its
        ``previous`` is rebased onto that record for a later rollback.
        """
        pendings = [p for p in self._pending.values() if key in p.patch.keys]
        if not pendings:
            return records

        records = list(records)
        created: list[ResourceRecord] = []
        for pending in pendings:
            ops = tuple(
                self._reapply_op(op, records, created) if op.key == key else op
                for op in pending.patch.ops
            )
            pending.patch = replace(pending.patch, ops=ops)

        identity = self.identity_for(key.resource)
        return merge(records, created, identity=identity)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _settle(self, pending: PendingMutation, state: MutationState) -> None:
        if pending.state is not MutationState.PENDING:
            raise MutationStateError(f"{pending!r} is already settled")
        pending.state = state
        self._pending.pop(pending.seq, None)

    def _apply(self, entry: CacheEntry, mutation: Mutation) -> PatchOp | None:
        if mutation.kind is MutationKind.CREATE:
            record = mutation.optimistic_record()
            entry.records.insert(0, record)
            return PatchOp(entry.key, mutation.kind, record.id, None, record, 0)

        index = _find(entry.records, mutation.target_id)
        if index is None:
            return None
        previous = entry.records[index]

        if mutation.kind is MutationKind.UPDATE:
            payload = dict(mutation.payload)
            payload.setdefault("resourceType", previous.resource_type)
            payload["id"] = previous.id
            updated = replace(previous, payload=payload)
            entry.records[index] = updated
            return PatchOp(
                entry.key, mutation.kind, previous.id, previous, updated, index
            )

        del entry.records[index]
        return PatchOp(entry.key, mutation.kind, previous.id, previous, None, index)

    def _reapply_op(
        self,
        op: PatchOp,
        records: list[ResourceRecord],
        created: list[ResourceRecord],
    ) -> PatchOp:
        if op.kind is MutationKind.CREATE:
            if op.applied is not None:
                created.insert(0, op.applied)
            return op

        index = _find(records, op.record_id)
        if index is None:
            return op
        displaced = records[index]
        if op.kind is MutationKind.UPDATE and op.applied is not None:
            records[index] = op.applied
        else:
            del records[index]
        return replace(op, previous=displaced, index=index)

    def _revert(self, entry: CacheEntry, op: PatchOp, seq: int) -> None:
        index = _find(entry.records, op.record_id)
        if op.kind is MutationKind.CREATE:
            if index is not None:
                del entry.records[index]
        elif op.kind is MutationKind.UPDATE:
            if index is not None and entry.records[index] == op.applied:
                entry.records[index] = op.previous
            else:
                # A later pending change sits on top; it restores our previous
                self._hand_down(op, seq)
        elif index is None and op.previous is not None:
            entry.records.insert(min(op.index, len(entry.records)), op.previous)

    def _hand_down(self, op: PatchOp, seq: int) -> None:
        for pending in self._pending.values():
            if pending.seq <= seq:
                continue
            ops = list(pending.patch.ops)
            for position, later in enumerate(ops):
                if (
                    later.key == op.key
                    and later.record_id == op.record_id
                    and later.previous == op.applied
                ):
                    ops[position] = replace(later, previous=op.previous)
                    pending.patch = replace(pending.patch, ops=tuple(ops))
                    return

    def _confirm(
        self, entry: CacheEntry, record_id: str, record: ResourceRecord
    ) -> None:
        index = _find(entry.records, record_id)
        if index is None:
            return
        if record.id != record_id and _find(entry.records, record.id) is not None:
            # Server copy already present; keep one record per id
            del entry.records[index]
        else:
            entry.records[index] = record
