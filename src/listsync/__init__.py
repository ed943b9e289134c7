"""listsync - client-side sync cache for paginated resource collections."""

from listsync.batch import BatchExecutor
from listsync.client import ResourceClient, create_client
from listsync.dedupe import RequestDeduplicator
from listsync.duration import parse_duration
from listsync.exceptions import (
    ListSyncError,
    MutationStateError,
    NetworkFailure,
    PartialBatchFailure,
    ServerRejection,
    StaleCursorFailure,
)
from listsync.invalidation import TagIndex
from listsync.list_cache import PaginatedListCache
from listsync.merge import ObservationIdentity, by_effective_time, merge, same_id
from listsync.optimistic import OptimisticMutationEngine, PendingMutation
from listsync.store import CacheStore
from listsync.tags import define_tags, is_tag_prefix
from listsync.transports import (
    AsyncFhirTransport,
    AsyncMemoryTransport,
    AsyncResourceTransport,
)

# Core types
from listsync.types import (
    BatchResult,
    CacheEntry,
    Duration,
    EntryStatus,
    Mutation,
    MutationKind,
    MutationOutcome,
    MutationState,
    OptimisticPatch,
    Page,
    Projection,
    QueryKey,
    ResourceRecord,
    Tag,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncFhirTransport",
    "AsyncMemoryTransport",
    "AsyncResourceTransport",
    "BatchExecutor",
    "BatchResult",
    "CacheEntry",
    "CacheStore",
    "Duration",
    "EntryStatus",
    "ListSyncError",
    "Mutation",
    "MutationKind",
    "MutationOutcome",
    "MutationState",
    "MutationStateError",
    "NetworkFailure",
    "ObservationIdentity",
    "OptimisticMutationEngine",
    "OptimisticPatch",
    "Page",
    "PaginatedListCache",
    "PartialBatchFailure",
    "PendingMutation",
    "Projection",
    "QueryKey",
    "RequestDeduplicator",
    "ResourceClient",
    "ResourceRecord",
    "ServerRejection",
    "StaleCursorFailure",
    "Tag",
    "TagIndex",
    "by_effective_time",
    "create_client",
    "define_tags",
    "is_tag_prefix",
    "merge",
    "parse_duration",
    "same_id",
]
