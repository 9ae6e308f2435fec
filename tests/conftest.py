from __future__ import annotations

import os

# Settings are read at import time; keep the tests off real Redis, real
# token endpoints and retry backoff. Only applied when not set by the caller/CI.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SOURCE_AUTH_MODE", "none")
os.environ.setdefault("SOURCE_VENDOR", "cerner")
os.environ.setdefault("RETRY_MAX_ATTEMPTS", "3")
os.environ.setdefault("RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("RETRY_MAX_DELAY_SECONDS", "0")
os.environ.setdefault("PUBLISH_TIMEOUT_SECONDS", "1")

import pytest  # noqa: E402
from discharge_export.core.logging import configure_logging  # noqa: E402
from discharge_export.core.dependencies import build_export_services  # noqa: E402
from discharge_export.services.event_publisher import InMemoryEventPublisher  # noqa: E402
from discharge_export.services.patient_mapping_store import InMemoryPatientMappingStore  # noqa: E402

from tests.fakes import (  # noqa: E402
    DESTINATION_BASE_URL,
    SOURCE_BASE_URL,
    FakeFHIRClient,
    FakeFHIRServer,
    FakeSourceEHRClient,
)

configure_logging()


@pytest.fixture
def source_server():
    return FakeFHIRServer(SOURCE_BASE_URL)


@pytest.fixture
def destination_server():
    return FakeFHIRServer(DESTINATION_BASE_URL)


@pytest.fixture
def source_client(source_server):
    return FakeSourceEHRClient(source_server)


@pytest.fixture
def destination_client(destination_server):
    return FakeFHIRClient(destination_server)


@pytest.fixture
def mapping_store():
    return InMemoryPatientMappingStore()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def services(source_client, destination_client, mapping_store, publisher):
    """Full pipeline wired against the in-memory FHIR servers"""
    return build_export_services(
        source_client=source_client,
        destination_client=destination_client,
        mapping_store=mapping_store,
        publisher=publisher,
    )
