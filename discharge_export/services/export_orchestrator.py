"""
Export Orchestrator

Runs one ExportJob through the pipeline:

    FETCHING -> RESOLVING_PATIENT -> CHECKING_DUPLICATE -> (ALREADY_EXPORTED)
             -> WRITING -> PUBLISHING -> DONE

with FAILED reachable from any non-terminal state. Every job that enters
``run_export`` yields exactly one ExportResult and one published
DocumentExportEvent, whatever the outcome.

Decisions owned here:
- "already exported": an export is committed by claiming the export
  commit marker (compare-and-create on the fingerprint) once its resource
  set is complete. A job that loses the claim discards its own set and
  reports the winner's ids. An uncommitted complete set found by the
  duplicate check is claimed the same way before it is reported.
- one token refresh and replay when the source rejects its token
- cancellation stops a job before its write starts; a write already issued
  runs to completion
- a publish failure after the data is durable is reported as
  PublishFailedAfterWrite, not as a write failure
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, TypeVar

from discharge_export.core.config import settings
from discharge_export.core.errors import (
    DestinationWriteFailed,
    ExportCancelled,
    ExportError,
    PublishFailedAfterWrite,
    SourceAuthExpired,
)
from discharge_export.core.logging import get_logger
from discharge_export.core.metrics import (
    export_step_duration_seconds,
    publish_failed_after_write_total,
    record_export_outcome,
)
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.integrations.fhir import SourceEHRClient
from discharge_export.models.export import (
    DocumentExportEvent,
    DuplicateCheckOutcome,
    ExportJob,
    ExportMetadata,
    ExportResult,
    ExportState,
    PatientMappingOutcome,
    utc_now_iso,
)
from discharge_export.models.fingerprint import export_fingerprint
from discharge_export.services.destination_writer import DestinationFHIRWriter, WrittenDocument
from discharge_export.services.duplicate_detector import DuplicateDetector, ExistingExport
from discharge_export.services.event_publisher import EventPublisher
from discharge_export.services.patient_identity import PatientIdentityResolver
from discharge_export.services.patient_mapping_store import PatientMappingStore

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class _ExportRun:
    """Mutable per-job accumulator; frozen into an ExportResult at the end"""

    job: ExportJob
    state: ExportState = ExportState.FETCHING
    state_started: float = field(default_factory=time.monotonic)
    export_timestamp: str = field(default_factory=utc_now_iso)
    encounter_id: Optional[str] = None
    original_size: Optional[int] = None
    content_type: Optional[str] = None
    destination_patient_id: Optional[str] = None
    patient_mapping: Optional[PatientMappingOutcome] = None
    vendor: Optional[str] = None

    def metadata(self, duplicate_check: Optional[DuplicateCheckOutcome] = None) -> ExportMetadata:
        return ExportMetadata(
            export_timestamp=self.export_timestamp,
            original_size=self.original_size,
            content_type=self.content_type,
            patient_mapping=self.patient_mapping,
            duplicate_check=duplicate_check,
            vendor=self.vendor,
        )

    def succeeded(
        self,
        document_reference_id: str,
        binary_id: Optional[str],
        composition_id: Optional[str],
        duplicate_check: DuplicateCheckOutcome,
    ) -> ExportResult:
        return ExportResult(
            success=True,
            source_document_id=self.job.source_document_id,
            source_patient_id=self.job.source_patient_id,
            destination_binary_id=binary_id,
            destination_document_reference_id=document_reference_id,
            destination_composition_id=composition_id,
            destination_patient_id=self.destination_patient_id,
            encounter_id=self.encounter_id or self.job.encounter_id,
            metadata=self.metadata(duplicate_check),
        )

    def failed(self, error: ExportError) -> ExportResult:
        if not error.step:
            error.step = self.state.value
        return ExportResult(
            success=False,
            source_document_id=self.job.source_document_id,
            source_patient_id=self.job.source_patient_id,
            destination_patient_id=self.destination_patient_id,
            encounter_id=self.encounter_id or self.job.encounter_id,
            error=error.describe(),
            metadata=self.metadata(),
        )


class ExportOrchestrator:
    """Sequences the pipeline components for one job at a time"""

    def __init__(
        self,
        source_client: SourceEHRClient,
        identity_resolver: PatientIdentityResolver,
        duplicate_detector: DuplicateDetector,
        writer: DestinationFHIRWriter,
        publisher: EventPublisher,
        commit_store: PatientMappingStore,
        commit_policy: Optional[RetryPolicy] = None,
        vendor: Optional[str] = None,
    ):
        self.source_client = source_client
        self.identity_resolver = identity_resolver
        self.duplicate_detector = duplicate_detector
        self.writer = writer
        self.publisher = publisher
        self.commit_store = commit_store
        self.commit_policy = commit_policy or default_retry_policy(DestinationWriteFailed)
        self.vendor = vendor or settings.SOURCE_VENDOR

    async def run_export(self, job: ExportJob, cancel_event: Optional[asyncio.Event] = None) -> ExportResult:
        """
        Run one job to a terminal state.

        Args:
            job: The export to perform
            cancel_event: When set before the write step, the job stops with
                ExportCancelled

        Returns:
            ExportResult (never raises for classified failures)
        """
        run = _ExportRun(job=job, encounter_id=job.encounter_id, vendor=self.vendor)
        log = logger.bind(
            tenant_id=job.tenant_id,
            source_document_id=job.source_document_id,
            source_patient_id=job.source_patient_id,
        )
        log.info("export_started", state=run.state.value)

        failure: Optional[ExportError] = None
        try:
            result = await self._execute(job, run, log, cancel_event)
        except ExportError as e:
            failure = e
            result = run.failed(e)
            log.warning("export_failed", step=e.step, failure_class=e.kind, error=e.message)
        except asyncio.CancelledError:
            failure = ExportCancelled("export task cancelled")
            result = run.failed(failure)
            log.warning("export_failed", step=failure.step, failure_class=failure.kind)
            await self._finish(job, run, result, failure, log)
            raise
        except Exception as e:
            failure = ExportError(f"Unexpected error: {e}")
            result = run.failed(failure)
            log.exception("export_failed", step=failure.step, failure_class=failure.kind)

        return await self._finish(job, run, result, failure, log)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _execute(
        self,
        job: ExportJob,
        run: _ExportRun,
        log,
        cancel_event: Optional[asyncio.Event],
    ) -> ExportResult:
        document = await self._with_auth_refresh(
            lambda: self.source_client.fetch_document(
                job.tenant_id, job.source_document_id, expected_patient_id=job.source_patient_id
            ),
            log,
        )
        run.original_size = document.size
        run.content_type = document.content_type
        run.encounter_id = job.encounter_id or document.metadata.encounter_id

        self._transition(run, ExportState.RESOLVING_PATIENT, log)
        resolution = await self._with_auth_refresh(
            lambda: self.identity_resolver.resolve_patient(job.tenant_id, job.source_patient_id),
            log,
        )
        run.destination_patient_id = resolution.destination_patient_id
        run.patient_mapping = PatientMappingOutcome.CREATED if resolution.created else PatientMappingOutcome.FOUND

        self._transition(run, ExportState.CHECKING_DUPLICATE, log)
        check = await self.duplicate_detector.is_duplicate(
            job.tenant_id, run.destination_patient_id, job.source_document_id
        )
        if check.duplicate:
            existing = check.existing
            if not check.committed:
                existing = await self._commit(job, run, existing, log)
            self._transition(run, ExportState.ALREADY_EXPORTED, log)
            return self._existing_result(run, existing)

        if cancel_event is not None and cancel_event.is_set():
            raise ExportCancelled("shutdown requested before write")

        self._transition(run, ExportState.WRITING, log)
        # Shielded: a cancelled caller does not abort a write already issued
        written = await asyncio.shield(
            self.writer.write_document(
                tenant_id=job.tenant_id,
                destination_patient_id=run.destination_patient_id,
                encounter_id=run.encounter_id,
                content=document.content,
                content_type=document.content_type,
                source_document_id=job.source_document_id,
                source_document=document.metadata,
            )
        )
        return await self._settle_write(job, run, written, log)

    async def _settle_write(self, job: ExportJob, run: _ExportRun, written: WrittenDocument, log) -> ExportResult:
        """Keep our write unless a concurrent job committed the same document first"""
        ours = ExistingExport(
            document_reference_id=written.document_reference_id,
            composition_id=written.composition_id,
            binary_id=written.binary_id,
        )
        winner = await self._commit(job, run, ours, log)
        if winner.document_reference_id == written.document_reference_id:
            return run.succeeded(
                document_reference_id=written.document_reference_id,
                binary_id=written.binary_id,
                composition_id=written.composition_id,
                duplicate_check=DuplicateCheckOutcome.NEW,
            )

        log.warning(
            "concurrent_export_lost",
            discarded_document_reference_id=written.document_reference_id,
            winner_document_reference_id=winner.document_reference_id,
        )
        leftovers = await self.writer.discard(written)
        if leftovers:
            log.error("concurrent_export_discard_incomplete", leftovers=leftovers)
        return self._existing_result(run, winner)

    async def _commit(self, job: ExportJob, run: _ExportRun, candidate: ExistingExport, log) -> ExistingExport:
        """
        Claim the export commit marker for ``candidate``.

        Returns:
            ``candidate`` when the claim holds (including a retried claim that
            reads back our own id), otherwise the export that holds it
        """
        fingerprint = export_fingerprint(job.tenant_id, run.destination_patient_id, job.source_document_id)
        committed_id = await self.commit_policy.call(
            lambda: self.commit_store.claim_export_commit(fingerprint, candidate.document_reference_id)
        )
        if committed_id == candidate.document_reference_id:
            log.info("export_committed", document_reference_id=committed_id)
            return candidate

        winner = await self.duplicate_detector.get_export(committed_id)
        if winner is None:
            raise DestinationWriteFailed(
                f"Committed export DocumentReference/{committed_id} is missing or incomplete"
            )
        return winner

    def _existing_result(self, run: _ExportRun, existing: ExistingExport) -> ExportResult:
        return run.succeeded(
            document_reference_id=existing.document_reference_id,
            binary_id=existing.binary_id,
            composition_id=existing.composition_id,
            duplicate_check=DuplicateCheckOutcome.DUPLICATE,
        )

    async def _with_auth_refresh(self, call: Callable[[], Awaitable[T]], log) -> T:
        """Refresh the source token once on SourceAuthExpired and replay"""
        try:
            return await call()
        except SourceAuthExpired:
            log.info("source_token_refresh")
            await self.source_client.refresh_access_token()
            return await call()

    # =========================================================================
    # Terminal handling
    # =========================================================================

    async def _finish(
        self,
        job: ExportJob,
        run: _ExportRun,
        result: ExportResult,
        failure: Optional[ExportError],
        log,
    ) -> ExportResult:
        """Publish the terminal event and record the outcome"""
        self._transition(run, ExportState.PUBLISHING, log)
        event = DocumentExportEvent.from_result(job, result)

        try:
            await self.publisher.publish(event)
        except ExportError as e:
            if result.success:
                publish_failure = PublishFailedAfterWrite(e.message, step=ExportState.PUBLISHING.value)
                publish_failed_after_write_total.inc()
                log.error(
                    "export_publish_failed",
                    failure_class=publish_failure.kind,
                    document_reference_id=result.destination_document_reference_id,
                    error=e.message,
                )
            else:
                publish_failure = e
                publish_failure.step = ExportState.PUBLISHING.value
                log.error("export_publish_failed", failure_class=e.kind, error=e.message)
            result = replace(result, publish_error=publish_failure.describe())

        if result.success:
            self._transition(run, ExportState.DONE, log)
            record_export_outcome("duplicate" if result.is_duplicate else "success")
        else:
            self._transition(run, ExportState.FAILED, log)
            record_export_outcome("failed", failure_class=failure.kind if failure else ExportError.kind)

        log.info(
            "export_finished",
            success=result.success,
            duplicate_check=result.metadata.duplicate_check.value if result.metadata.duplicate_check else None,
            patient_mapping=result.metadata.patient_mapping.value if result.metadata.patient_mapping else None,
            document_reference_id=result.destination_document_reference_id,
            error=result.error,
        )
        return result

    def _transition(self, run: _ExportRun, state: ExportState, log) -> None:
        now = time.monotonic()
        export_step_duration_seconds.labels(step=run.state.value).observe(now - run.state_started)
        log.debug("export_state_changed", previous=run.state.value, state=state.value)
        run.state = state
        run.state_started = now
