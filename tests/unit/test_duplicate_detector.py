"""Unit tests for the duplicate detector."""

import pytest
from discharge_export.core.errors import DestinationWriteFailed
from discharge_export.models.fingerprint import export_fingerprint
from discharge_export.services.destination_writer import DestinationFHIRWriter
from discharge_export.services.duplicate_detector import DuplicateDetector

from tests.fakes import fast_policy

FINGERPRINT_SYSTEM = "urn:discharge-export:fingerprint"


@pytest.fixture
def detector(destination_client, mapping_store):
    return DuplicateDetector(
        destination_client,
        commit_store=mapping_store,
        retry_policy=fast_policy(DestinationWriteFailed),
        fingerprint_system=FINGERPRINT_SYSTEM,
    )


@pytest.fixture
def writer(destination_client):
    return DestinationFHIRWriter(
        destination_client,
        retry_policy=fast_policy(DestinationWriteFailed),
        fingerprint_system=FINGERPRINT_SYSTEM,
    )


async def _write(writer, destination_patient_id="dest-1", source_document_id="doc-1", tenant_id="t1"):
    return await writer.write_document(
        tenant_id=tenant_id,
        destination_patient_id=destination_patient_id,
        encounter_id=None,
        content=b"summary",
        content_type="text/plain",
        source_document_id=source_document_id,
    )


class TestIsDuplicate:
    @pytest.mark.asyncio
    async def test_new_document(self, detector):
        check = await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert check.duplicate is False
        assert check.existing_document_reference_id is None

    @pytest.mark.asyncio
    async def test_complete_export_is_duplicate(self, detector, writer):
        written = await _write(writer)

        check = await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert check.duplicate is True
        assert check.existing.document_reference_id == written.document_reference_id
        assert check.existing.composition_id == written.composition_id
        assert check.existing.binary_id == written.binary_id
        assert check.existing.committed_at is not None

    @pytest.mark.asyncio
    async def test_fingerprint_is_scoped(self, detector, writer):
        await _write(writer)

        assert (await detector.is_duplicate("t2", "dest-1", "doc-1")).duplicate is False
        assert (await detector.is_duplicate("t1", "dest-2", "doc-1")).duplicate is False
        assert (await detector.is_duplicate("t1", "dest-1", "doc-2")).duplicate is False

    @pytest.mark.asyncio
    async def test_incomplete_export_is_ignored(self, detector, writer, destination_server):
        destination_server.fail("POST", "Composition", status=422)
        with pytest.raises(DestinationWriteFailed):
            await _write(writer)

        check = await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert check.duplicate is False

    @pytest.mark.asyncio
    async def test_entered_in_error_is_ignored(self, detector, writer, destination_server):
        written = await _write(writer)
        destination_server.get("DocumentReference", written.document_reference_id)["status"] = "entered-in-error"

        assert (await detector.is_duplicate("t1", "dest-1", "doc-1")).duplicate is False

    @pytest.mark.asyncio
    async def test_search_failure_is_classified(self, detector, destination_server):
        destination_server.fail("GET", "DocumentReference", status=500, times=5)

        with pytest.raises(DestinationWriteFailed) as exc_info:
            await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert exc_info.value.transient is True


class TestFindExports:
    @pytest.mark.asyncio
    async def test_earliest_commit_first(self, detector, writer):
        first = await _write(writer)
        second = await _write(writer)

        exports = await detector.find_exports("t1", "dest-1", "doc-1")

        assert [e.document_reference_id for e in exports] == [
            first.document_reference_id,
            second.document_reference_id,
        ]
        check = await detector.is_duplicate("t1", "dest-1", "doc-1")
        assert check.existing.document_reference_id == first.document_reference_id

    @pytest.mark.asyncio
    async def test_commit_time_is_the_composition(self, detector, writer, destination_server):
        """A DocumentReference written earlier but committed later does not win"""
        destination_server.fail("POST", "Composition", status=503, times=3)
        with pytest.raises(DestinationWriteFailed):
            await _write(writer)
        orphan = destination_server.all("DocumentReference")[0]
        later = await _write(writer)

        # Complete the orphaned set after the second export committed
        destination_server.add(
            {
                "resourceType": "Composition",
                "status": "final",
                "subject": {"reference": "Patient/dest-1"},
                "section": [{"entry": [{"reference": f"DocumentReference/{orphan['id']}"}]}],
            }
        )

        exports = await detector.find_exports("t1", "dest-1", "doc-1")

        assert [e.document_reference_id for e in exports] == [later.document_reference_id, orphan["id"]]

    @pytest.mark.asyncio
    async def test_ignores_documents_without_fingerprint(self, detector, destination_server):
        """Only DocumentReferences carrying the fingerprint identifier count"""
        destination_server.add(
            {
                "resourceType": "DocumentReference",
                "status": "current",
                "subject": {"reference": "Patient/dest-1"},
                "identifier": [{"system": "urn:other", "value": "x"}],
                "content": [{"attachment": {"url": "Binary/b-1"}}],
            }
        )

        assert await detector.find_exports("t1", "dest-1", "doc-1") == []


class TestCommitMarker:
    @pytest.mark.asyncio
    async def test_uncommitted_candidate(self, detector, writer):
        await _write(writer)

        check = await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert check.duplicate is True
        assert check.committed is False

    @pytest.mark.asyncio
    async def test_marker_overrides_commit_time(self, detector, writer, mapping_store):
        await _write(writer)
        later = await _write(writer)
        await mapping_store.claim_export_commit(
            export_fingerprint("t1", "dest-1", "doc-1"), later.document_reference_id
        )

        check = await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert check.committed is True
        assert check.existing.document_reference_id == later.document_reference_id
        assert check.existing.composition_id == later.composition_id

    @pytest.mark.asyncio
    async def test_marker_to_missing_export_fails(self, detector, mapping_store):
        await mapping_store.claim_export_commit(export_fingerprint("t1", "dest-1", "doc-1"), "gone")

        with pytest.raises(DestinationWriteFailed, match="DocumentReference/gone") as exc_info:
            await detector.is_duplicate("t1", "dest-1", "doc-1")

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_get_export_requires_composition(self, detector, writer, destination_server):
        destination_server.fail("POST", "Composition", status=422)
        with pytest.raises(DestinationWriteFailed):
            await _write(writer)
        orphan = destination_server.all("DocumentReference")[0]

        assert await detector.get_export(orphan["id"]) is None
        assert await detector.get_export("missing") is None
