"""Unit tests for the batch runner and polling sweep."""

from unittest.mock import patch

import pytest
from discharge_export.models.export import DuplicateCheckOutcome, ExportJob
from discharge_export.services.export_runner import ExportRunner

from tests.fakes import seed_source, source_document


@pytest.fixture
def runner(services):
    return services.runner


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_results_in_job_order(self, runner, source_server):
        seed_source(source_server, document_id="doc-1")
        seed_source(source_server, document_id="doc-3")
        jobs = [ExportJob("t1", "p-100", doc) for doc in ("doc-1", "doc-2", "doc-3")]

        results = await runner.run_batch(jobs)

        assert [r.source_document_id for r in results] == ["doc-1", "doc-2", "doc-3"]
        assert [r.success for r in results] == [True, False, True]
        assert results[1].error.startswith("SourceNotFound")

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, services, source_server):
        for i in range(6):
            seed_source(source_server, document_id=f"doc-{i}")
        runner = ExportRunner(services.orchestrator, services.source_client, max_concurrency=2)
        active = 0
        peak = 0
        original = services.orchestrator.run_export

        async def _tracked(job, cancel_event=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await original(job, cancel_event=cancel_event)
            finally:
                active -= 1

        with patch.object(services.orchestrator, "run_export", side_effect=_tracked):
            results = await runner.run_batch(ExportJob("t1", "p-100", f"doc-{i}") for i in range(6))

        assert all(r.success for r in results)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_shutdown_stops_jobs_before_write(self, runner, source_server, destination_server):
        seed_source(source_server)
        runner.shutdown()

        results = await runner.run_batch([ExportJob("t1", "p-100", "doc-1")])

        assert runner.is_shutting_down
        assert results[0].error.startswith("ExportCancelled")
        assert destination_server.count("Binary") == 0


class TestSweep:
    @pytest.mark.asyncio
    async def test_discover_jobs(self, runner, source_server):
        seed_source(source_server, patient_id="p-1", document_id="doc-1", encounter_id="enc-1")
        seed_source(source_server, patient_id="p-1", document_id="doc-2")
        seed_source(source_server, patient_id="p-2", document_id="doc-3")

        jobs = await runner.discover_jobs("t1", ["p-1", "p-2", "p-1"])

        assert [(j.source_patient_id, j.source_document_id) for j in jobs] == [
            ("p-1", "doc-1"),
            ("p-1", "doc-2"),
            ("p-2", "doc-3"),
        ]
        assert jobs[0].encounter_id == "enc-1"
        assert all(j.tenant_id == "t1" for j in jobs)

    @pytest.mark.asyncio
    async def test_failed_patient_search_is_skipped(self, runner, source_server):
        seed_source(source_server, patient_id="p-2", document_id="doc-3")
        source_server.fail("GET", "DocumentReference", status=403)

        jobs = await runner.discover_jobs("t1", ["p-1", "p-2"])

        assert [j.source_document_id for j in jobs] == ["doc-3"]

    @pytest.mark.asyncio
    async def test_sweep_twice_reports_duplicates(self, runner, source_server, destination_server):
        seed_source(source_server, patient_id="p-1", document_id="doc-1")
        source_server.add(source_document("doc-2", "p-1", type_code="34117-2"))

        first = await runner.sweep("t1", ["p-1"])
        second = await runner.sweep("t1", ["p-1"])

        assert [r.source_document_id for r in first] == ["doc-1"]
        assert first[0].metadata.duplicate_check == DuplicateCheckOutcome.NEW
        assert second[0].metadata.duplicate_check == DuplicateCheckOutcome.DUPLICATE
        assert destination_server.count("Composition") == 1

    @pytest.mark.asyncio
    async def test_blank_patient_ids_are_skipped(self, runner, source_server):
        seed_source(source_server, patient_id="p-2", document_id="doc-3")

        jobs = await runner.discover_jobs("t1", ["", "  ", "p-2"])

        assert [(j.source_patient_id, j.source_document_id) for j in jobs] == [("p-2", "doc-3")]

    @pytest.mark.asyncio
    async def test_empty_sweep(self, runner):
        assert await runner.sweep("t1", ["p-none"]) == []


def test_shutdown_is_idempotent(runner):
    runner.shutdown()
    runner.shutdown()

    assert runner.is_shutting_down
