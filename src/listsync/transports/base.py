"""Transport protocol for the remote resource server."""

from typing import Protocol, runtime_checkable

from listsync.types import BatchItemResult, Mutation, Page, QueryKey, ResourceRecord


@runtime_checkable
class AsyncResourceTransport(Protocol):
    """Async interface to a paginated resource server.

    Implementations raise ``NetworkFailure`` when no response arrives,
    ``ServerRejection`` for structured errors and ``StaleCursorFailure``
    when a continuation cursor is refused.
    """

    async def fetch_page(self, key: QueryKey, cursor: str | None) -> Page:
        """Fetch the first page for ``key``, or the page ``cursor`` points at."""
        ...

    async def send(self, mutation: Mutation) -> ResourceRecord | None:
        """Send one mutation. Returns the server's record (None for deletes)."""
        ...

    async def send_batch(self, mutations: list[Mutation]) -> list[BatchItemResult]:
        """Send mutations as one atomic request.

        Raises if the batch call itself fails. Otherwise returns one result
        per mutation, in order.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
