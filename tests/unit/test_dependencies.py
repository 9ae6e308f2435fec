"""Unit tests for pipeline wiring."""

import pytest
from discharge_export.core.dependencies import build_export_services
from discharge_export.models.export import ExportJob
from discharge_export.services.event_publisher import InMemoryEventPublisher
from discharge_export.services.patient_mapping_store import InMemoryPatientMappingStore

from tests.fakes import seed_source


@pytest.fixture
def empty_store():
    return InMemoryPatientMappingStore()


class TestBuildExportServices:
    def test_injected_collaborators_are_kept(self, source_client, destination_client, empty_store):
        publisher = InMemoryEventPublisher()

        services = build_export_services(
            source_client=source_client,
            destination_client=destination_client,
            mapping_store=empty_store,
            publisher=publisher,
        )

        assert services.mapping_store is empty_store
        assert services.orchestrator.commit_store is empty_store
        assert services.orchestrator.identity_resolver.mapping_store is empty_store
        assert services.orchestrator.duplicate_detector.commit_store is empty_store
        assert services.publisher is publisher
        assert services.source_client is source_client
        assert services.destination_client is destination_client

    @pytest.mark.asyncio
    async def test_export_runs_against_empty_store(
        self, source_client, destination_client, source_server, empty_store
    ):
        seed_source(source_server)
        services = build_export_services(
            source_client=source_client,
            destination_client=destination_client,
            mapping_store=empty_store,
            publisher=InMemoryEventPublisher(),
        )

        result = await services.orchestrator.run_export(ExportJob("t1", "p-100", "doc-1"))

        assert result.success is True
        assert (await empty_store.get("t1", "p-100")).destination_patient_id == result.destination_patient_id
