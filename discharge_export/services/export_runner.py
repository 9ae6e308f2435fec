"""
Batch runner and polling sweep.

Runs many ExportJobs concurrently (one task per job, bounded by a semaphore)
and discovers jobs by searching the source EHR for discharge documents.

``shutdown()`` signals every in-flight job to stop before its write step;
jobs already writing finish their write.
"""

import asyncio
from typing import Iterable, List, Optional

from discharge_export.core.config import settings
from discharge_export.core.errors import ExportError
from discharge_export.core.logging import get_logger
from discharge_export.integrations.fhir import SourceEHRClient
from discharge_export.models.export import ExportJob, ExportResult
from discharge_export.services.export_orchestrator import ExportOrchestrator

logger = get_logger(__name__)


class ExportRunner:
    def __init__(
        self,
        orchestrator: ExportOrchestrator,
        source_client: SourceEHRClient,
        max_concurrency: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.source_client = source_client
        self.max_concurrency = max_concurrency or settings.EXPORT_MAX_CONCURRENCY
        self._shutdown = asyncio.Event()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def shutdown(self) -> None:
        """Stop jobs that have not started writing"""
        if not self._shutdown.is_set():
            logger.info("export_runner_shutdown_requested")
        self._shutdown.set()

    async def run_export(self, job: ExportJob) -> ExportResult:
        return await self.orchestrator.run_export(job, cancel_event=self._shutdown)

    async def run_batch(self, jobs: Iterable[ExportJob]) -> List[ExportResult]:
        """Run jobs concurrently; results are returned in job order"""
        jobs = list(jobs)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _run(job: ExportJob) -> ExportResult:
            async with semaphore:
                return await self.run_export(job)

        results = await asyncio.gather(*(_run(job) for job in jobs))
        logger.info(
            "export_batch_finished",
            jobs=len(jobs),
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
        )
        return list(results)

    async def discover_jobs(self, tenant_id: str, source_patient_ids: Iterable[str]) -> List[ExportJob]:
        """
        Search the source for discharge documents of each patient.

        A patient whose search fails is skipped and logged; the rest of the
        sweep continues.
        """
        jobs: List[ExportJob] = []
        seen = set()
        for patient_id in source_patient_ids:
            if not patient_id or not patient_id.strip():
                logger.warning("export_sweep_patient_skipped", tenant_id=tenant_id, error="blank source patient id")
                continue
            try:
                documents = await self.source_client.search_discharge_documents(tenant_id, patient_id)
            except ExportError as e:
                logger.warning(
                    "export_sweep_patient_skipped",
                    tenant_id=tenant_id,
                    source_patient_id=patient_id,
                    error=e.describe(),
                )
                continue

            for document in documents:
                if not document.id or document.id in seen:
                    continue
                seen.add(document.id)
                jobs.append(
                    ExportJob(
                        tenant_id=tenant_id,
                        source_patient_id=patient_id,
                        source_document_id=document.id,
                        encounter_id=document.encounter_id,
                    )
                )

        logger.info("export_sweep_discovered", tenant_id=tenant_id, jobs=len(jobs))
        return jobs

    async def sweep(self, tenant_id: str, source_patient_ids: Iterable[str]) -> List[ExportResult]:
        """Discover and run; already-exported documents short-circuit as duplicates"""
        jobs = await self.discover_jobs(tenant_id, source_patient_ids)
        return await self.run_batch(jobs)
