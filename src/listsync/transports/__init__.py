"""Transports for talking to the resource server."""

from listsync.transports.base import AsyncResourceTransport
from listsync.transports.http import AsyncFhirTransport, parse_bundle
from listsync.transports.memory import AsyncMemoryTransport

__all__ = [
    "AsyncFhirTransport",
    "AsyncMemoryTransport",
    "AsyncResourceTransport",
    "parse_bundle",
]
