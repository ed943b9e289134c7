"""Batch submission with sequential fallback."""

from __future__ import annotations

import logging

from listsync.exceptions import ListSyncError, ServerRejection
from listsync.invalidation import TagIndex
from listsync.optimistic import OptimisticMutationEngine, PendingMutation
from listsync.transports.base import AsyncResourceTransport
from listsync.types import BatchResult, Mutation, MutationOutcome, Tag

logger = logging.getLogger(__name__)


class BatchExecutor:
    """Send mutations as one atomic batch, falling back to one-at-a-time.

    The fallback is strictly sequential, in submission order, awaiting each
    call before the next. A failed fallback call rolls back only its own
    mutation; the result reports every item separately.
    """

    def __init__(
        self,
        engine: OptimisticMutationEngine,
        index: TagIndex,
        transport: AsyncResourceTransport,
    ) -> None:
        self._engine = engine
        self._index = index
        self._transport = transport

    async def submit_batch(self, mutations: list[Mutation]) -> BatchResult:
        if not mutations:
            return BatchResult(outcomes=())

        pendings = [self._engine.begin(m) for m in mutations]
        used_fallback = False
        try:
            items = await self._transport.send_batch(list(mutations))
        except ListSyncError as e:
            logger.info(
                "Batch of %d failed (%s); falling back to sequential requests",
                len(mutations),
                e,
            )
            used_fallback = True
            outcomes = await self._sequential(pendings)
        except BaseException as e:
            for pending in pendings:
                self._engine.rollback(pending, e)
            raise
        else:
            outcomes = []
            for position, pending in enumerate(pendings):
                item = items[position] if position < len(items) else None
                if item is None:
                    error = ServerRejection("batch response missing sub-response")
                    outcomes.append(self._engine.rollback(pending, error))
                elif item.error is None:
                    outcomes.append(self._engine.commit(pending, item.record))
                else:
                    outcomes.append(self._engine.rollback(pending, item.error))

        tags: list[Tag] = []
        for outcome in outcomes:
            if outcome.ok:
                tags.extend(t for t in outcome.mutation.affected_tags if t not in tags)
        if tags:
            await self._index.invalidate(tags)
        return BatchResult(outcomes=tuple(outcomes), used_fallback=used_fallback)

    async def _sequential(
        self, pendings: list[PendingMutation]
    ) -> list[MutationOutcome]:
        outcomes: list[MutationOutcome] = []
        for pending in pendings:
            try:
                record = await self._transport.send(pending.mutation)
            except ListSyncError as e:
                outcomes.append(self._engine.rollback(pending, e))
                continue
            except BaseException as e:
                # Roll back this one and everything not yet sent
                for rest in pendings[len(outcomes) :]:
                    self._engine.rollback(rest, e)
                raise
            outcomes.append(self._engine.commit(pending, record))
        return outcomes
