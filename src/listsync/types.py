"""Core types for the listsync cache."""

from __future__ import annotations

import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, NewType

if TYPE_CHECKING:
    Tag = NewType("Tag", tuple[str, ...])
else:
    Tag = tuple

TEMP_PREFIX = "temp-"

DEFAULT_PAGE_SIZE = 10
DEFAULT_SORT_FIELD = "_lastUpdated"

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds


def new_temp_id() -> str:
    """Allocate a client-side identifier for an unconfirmed record."""
    return f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True, slots=True)
class ResourceRecord:
    """A server resource treated as an opaque payload."""

    id: str
    resource_type: str
    payload: Mapping[str, Any]
    last_modified: str | None = None  # ISO timestamp from meta.lastUpdated

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_PREFIX)

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> ResourceRecord:
        """Build a record from a raw FHIR-style resource dict."""
        meta = resource.get("meta") or {}
        return cls(
            id=str(resource["id"]),
            resource_type=str(resource.get("resourceType", "")),
            payload=dict(resource),
            last_modified=meta.get("lastUpdated"),
        )

    def with_id(self, new_id: str) -> ResourceRecord:
        payload = dict(self.payload)
        payload["id"] = new_id
        return replace(self, id=new_id, payload=payload)


@dataclass(frozen=True, slots=True)
class QueryKey:
    """Normalized parameters identifying one cached page of a collection."""

    resource: str
    offset: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    sort_field: str = DEFAULT_SORT_FIELD
    descending: bool = True
    search: str = ""
    params: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.page_size <= 0:
            raise ValueError("page_size must be > 0")
        # Normalize so equality doesn't depend on input order or padding
        object.__setattr__(self, "search", self.search.strip())
        object.__setattr__(
            self,
            "params",
            tuple(sorted((str(k), str(v)) for k, v in self.params)),
        )

    @classmethod
    def of(
        cls,
        resource: str,
        *,
        params: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> QueryKey:
        return cls(resource, params=tuple((params or {}).items()), **kwargs)

    @classmethod
    def from_params(cls, resource: str, params: Mapping[str, Any]) -> QueryKey:
        """Build a key from FHIR search parameters, in any order.

        ``_count`` is the page size, ``_getpagesoffset`` the offset, ``_sort``
        the sort field with a leading ``-`` for descending, and ``name`` the
        free-text filter. Anything else is kept as an extra filter.
        """
        remaining = dict(params)
        page_size = int(remaining.pop("_count", DEFAULT_PAGE_SIZE))
        offset = int(remaining.pop("_getpagesoffset", 0))
        sort = str(remaining.pop("_sort", f"-{DEFAULT_SORT_FIELD}"))
        search = str(remaining.pop("name", ""))
        descending = sort.startswith("-")
        return cls(
            resource,
            offset=offset,
            page_size=page_size,
            sort_field=sort.lstrip("-"),
            descending=descending,
            search=search,
            params=tuple(remaining.items()),
        )

    def to_params(self) -> dict[str, str]:
        """Render as FHIR search parameters."""
        result = {
            "_count": str(self.page_size),
            "_getpagesoffset": str(self.offset),
            "_sort": f"{'-' if self.descending else ''}{self.sort_field}",
        }
        if self.search:
            result["name"] = self.search
        result.update(self.params)
        return result

    def with_sort(self, sort_field: str, *, descending: bool = False) -> QueryKey:
        """Change sort order; always resets to the first page."""
        return replace(self, sort_field=sort_field, descending=descending, offset=0)

    def with_search(self, search: str) -> QueryKey:
        """Change the free-text filter; always resets to the first page."""
        return replace(self, search=search, offset=0)

    def default_tags(self) -> list[Tag]:
        tags = [Tag((self.resource,))]
        tags.extend(Tag((self.resource, k, v)) for k, v in self.params)
        return tags


class EntryStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class CacheEntry:
    """Mutable state for one QueryKey. Owned by the store."""

    key: QueryKey
    records: list[ResourceRecord] = field(default_factory=list)
    continuation_cursor: str | None = None
    page_cursor: str | None = None  # cursor that produced the visible page
    page_index: int = 0
    total: int | None = None
    fetched_at: float | None = None  # time.monotonic() seconds
    tags: set[Tag] = field(default_factory=set)
    status: EntryStatus = EntryStatus.IDLE
    is_fetching: bool = False
    stale: bool = False
    stale_marks: int = 0
    error: BaseException | None = None
    issued_seq: int = 0  # last read issued
    applied_seq: int = 0  # last read applied
    stale_seq: int = 0  # issued_seq when last marked stale

    @property
    def has_next_page(self) -> bool:
        # Cursor-only: never derived from a total count
        return self.continuation_cursor is not None

    def snapshot(self) -> dict[str, Any]:
        """Structural view used to compare cache state."""
        return {
            "records": list(self.records),
            "continuation_cursor": self.continuation_cursor,
            "page_cursor": self.page_cursor,
            "page_index": self.page_index,
            "status": self.status,
            "stale": self.stale,
        }


@dataclass(frozen=True, slots=True)
class Page:
    """One page as returned by a transport."""

    records: list[ResourceRecord]
    next_cursor: str | None = None
    total: int | None = None


@dataclass(frozen=True, slots=True)
class Projection:
    """Read-only view of a cache entry for the presentation layer."""

    records: tuple[ResourceRecord, ...]
    is_loading: bool
    is_fetching: bool
    is_error: bool
    has_next_page: bool
    is_stale: bool = False
    error: BaseException | None = None
    page_index: int = 0

    @classmethod
    def of(cls, entry: CacheEntry | None) -> Projection:
        if entry is None:
            return cls(
                records=(),
                is_loading=False,
                is_fetching=False,
                is_error=False,
                has_next_page=False,
            )
        return cls(
            records=tuple(entry.records),
            is_loading=entry.status is EntryStatus.LOADING and not entry.records,
            is_fetching=entry.is_fetching,
            is_error=entry.status is EntryStatus.ERROR,
            has_next_page=entry.has_next_page,
            is_stale=entry.stale,
            error=entry.error,
            page_index=entry.page_index,
        )


class MutationKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(str, enum.Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True, slots=True)
class Mutation:
    """A create, update or delete intent against one resource."""

    kind: MutationKind
    resource_type: str
    target_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    affected_tags: tuple[Tag, ...] = ()

    @classmethod
    def create(
        cls,
        resource_type: str,
        payload: Mapping[str, Any],
        *,
        tags: list[Tag] | None = None,
    ) -> Mutation:
        # Temp id is allocated up front, before any network call
        return cls(
            kind=MutationKind.CREATE,
            resource_type=resource_type,
            target_id=new_temp_id(),
            payload=dict(payload),
            affected_tags=tuple(tags or [Tag((resource_type,))]),
        )

    @classmethod
    def update(
        cls,
        resource_type: str,
        target_id: str,
        payload: Mapping[str, Any],
        *,
        tags: list[Tag] | None = None,
    ) -> Mutation:
        return cls(
            kind=MutationKind.UPDATE,
            resource_type=resource_type,
            target_id=target_id,
            payload=dict(payload),
            affected_tags=tuple(tags or [Tag((resource_type,))]),
        )

    @classmethod
    def delete(
        cls,
        resource_type: str,
        target_id: str,
        *,
        tags: list[Tag] | None = None,
    ) -> Mutation:
        return cls(
            kind=MutationKind.DELETE,
            resource_type=resource_type,
            target_id=target_id,
            affected_tags=tuple(tags or [Tag((resource_type,))]),
        )

    def optimistic_record(self) -> ResourceRecord:
        payload = dict(self.payload)
        payload.setdefault("resourceType", self.resource_type)
        payload["id"] = self.target_id
        return ResourceRecord(
            id=self.target_id,
            resource_type=self.resource_type,
            payload=payload,
        )


@dataclass(frozen=True, slots=True)
class PatchOp:
    """One reversible change to one cache entry."""

    key: QueryKey
    kind: MutationKind
    record_id: str
    previous: ResourceRecord | None  # None for create
    applied: ResourceRecord | None  # None for delete
    index: int


@dataclass(frozen=True, slots=True)
class OptimisticPatch:
    """Everything needed to undo one mutation's optimistic changes."""

    mutation: Mutation
    ops: tuple[PatchOp, ...] = ()

    @property
    def keys(self) -> set[QueryKey]:
        return {op.key for op in self.ops}


@dataclass(frozen=True, slots=True)
class MutationOutcome:
    """Terminal state of one mutation."""

    mutation: Mutation
    state: MutationState
    record: ResourceRecord | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.state is MutationState.COMMITTED


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Per-item outcomes of a batch submission."""

    outcomes: tuple[MutationOutcome, ...]
    used_fallback: bool = False

    @property
    def committed(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if o.state is MutationState.COMMITTED]

    @property
    def rolled_back(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if o.state is MutationState.ROLLED_BACK]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any item was rolled back."""
        from listsync.exceptions import PartialBatchFailure

        if not self.ok:
            raise PartialBatchFailure(list(self.outcomes))


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    """One sub-response of a batch call, correlated by position."""

    record: ResourceRecord | None = None
    error: BaseException | None = None
