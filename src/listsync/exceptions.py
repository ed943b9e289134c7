"""Error taxonomy for listsync."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from listsync.types import MutationOutcome


class ListSyncError(Exception):
    """Base class for all listsync errors."""


class NetworkFailure(ListSyncError):
    """Transport-level failure; no response was received."""


class ServerRejection(ListSyncError):
    """The server answered with a structured error."""

    def __init__(
        self,
        reason: str,
        *,
        status: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(reason if status is None else f"{status}: {reason}")
        self.reason = reason
        self.status = status
        self.details = details


class StaleCursorFailure(ServerRejection):
    """The server no longer accepts a continuation cursor."""


class PartialBatchFailure(ListSyncError):
    """A batch was accepted but some sub-operations were rejected."""

    def __init__(self, outcomes: list[MutationOutcome]) -> None:
        failed = sum(1 for o in outcomes if not o.ok)
        super().__init__(f"{failed} of {len(outcomes)} batch operations failed")
        self.outcomes = outcomes


class MutationStateError(ListSyncError):
    """A mutation was settled twice."""
