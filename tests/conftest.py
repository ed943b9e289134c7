"""Shared pytest fixtures."""

import pytest
from helpers import FlakyTransport, make_patients

from listsync import QueryKey, ResourceClient, create_client


@pytest.fixture
def transport() -> FlakyTransport:
    """Create a fresh in-memory transport for each test."""
    return FlakyTransport()


@pytest.fixture
def client(transport: FlakyTransport) -> ResourceClient:
    """Create a client over the in-memory transport."""
    return create_client(transport=transport, stale_after=None)


@pytest.fixture
def patients_key() -> QueryKey:
    """Patients sorted oldest first, ten per page."""
    return QueryKey("Patient", descending=False)


@pytest.fixture
def seeded(transport: FlakyTransport) -> FlakyTransport:
    """Transport holding 25 patients."""
    transport.seed("Patient", make_patients(25))
    return transport


