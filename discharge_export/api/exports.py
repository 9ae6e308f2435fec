"""
Export trigger endpoints

- POST /api/exports: run one job (webhook trigger)
- POST /api/exports/batch: run several jobs concurrently
- POST /api/exports/sweep: discover discharge documents for patients and export them
- GET  /api/exports/binary: fetch exported content by DocumentReference or Composition

Export outcomes are returned in the standard API envelope. A failed export is
reported with HTTP 502 and the full ExportResult in ``error.details``.
"""

import base64
from typing import List, Optional

from discharge_export.core.api_envelope import ErrorCodes, error_response, success_response
from discharge_export.core.dependencies import ExportServices, get_export_services
from discharge_export.core.errors import DocumentNotFound, ExportError
from discharge_export.core.logging import get_logger
from discharge_export.models.export import ExportJob, ExportResult
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

logger = get_logger(__name__)

router = APIRouter(prefix="/api/exports", tags=["exports"])


# ===================================
# Request Models
# ===================================


class ExportJobRequest(BaseModel):
    """Export trigger payload"""

    tenantId: str = Field(..., min_length=1)
    sourcePatientId: str = Field(..., min_length=1)
    sourceDocumentId: str = Field(..., min_length=1)
    encounterId: Optional[str] = None

    def to_job(self) -> ExportJob:
        return ExportJob(
            tenant_id=self.tenantId,
            source_patient_id=self.sourcePatientId,
            source_document_id=self.sourceDocumentId,
            encounter_id=self.encounterId,
        )


class ExportBatchRequest(BaseModel):
    jobs: List[ExportJobRequest] = Field(..., min_length=1)


class ExportSweepRequest(BaseModel):
    tenantId: str = Field(..., min_length=1)
    sourcePatientIds: List[str] = Field(..., min_length=1)

    @field_validator("sourcePatientIds")
    @classmethod
    def validate_patient_ids(cls, v: List[str]) -> List[str]:
        """Reject blank patient ids"""
        if any(not patient_id.strip() for patient_id in v):
            raise ValueError("sourcePatientIds must not contain blank ids")
        return v


def _batch_summary(results: List[ExportResult]) -> dict:
    return {
        "total": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "duplicates": sum(1 for r in results if r.success and r.is_duplicate),
        "failed": sum(1 for r in results if not r.success),
        "results": [r.to_dict() for r in results],
    }


# ===================================
# Endpoints
# ===================================


@router.post("")
async def run_export(
    request: ExportJobRequest,
    services: ExportServices = Depends(get_export_services),
):
    """Run one export job to completion"""
    result = await services.runner.run_export(request.to_job())

    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=error_response(
                code=ErrorCodes.EXPORT_FAILED,
                message=result.error or "Export failed",
                details=result.to_dict(),
            ),
        )
    return success_response(data=result.to_dict())


@router.post("/batch")
async def run_export_batch(
    request: ExportBatchRequest,
    services: ExportServices = Depends(get_export_services),
):
    """Run several jobs concurrently; per-job outcomes are in data.results"""
    results = await services.runner.run_batch(job.to_job() for job in request.jobs)
    return success_response(data=_batch_summary(results))


@router.post("/sweep")
async def run_export_sweep(
    request: ExportSweepRequest,
    services: ExportServices = Depends(get_export_services),
):
    """Search the source EHR for discharge documents and export them"""
    results = await services.runner.sweep(request.tenantId, request.sourcePatientIds)
    return success_response(data=_batch_summary(results), tenant_id=request.tenantId)


@router.get("/binary")
async def get_exported_binary(
    document_reference_id: Optional[str] = Query(None),
    composition_id: Optional[str] = Query(None),
    services: ExportServices = Depends(get_export_services),
):
    """Return exported content (base64) for a DocumentReference or Composition"""
    if not document_reference_id and not composition_id:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_response(
                code=ErrorCodes.VALIDATION_ERROR,
                message="document_reference_id or composition_id is required",
            ),
        )

    try:
        retrieved = await services.retrieval.get_binary(
            document_reference_id=document_reference_id,
            composition_id=composition_id,
        )
    except DocumentNotFound as e:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=error_response(code=ErrorCodes.NOT_FOUND, message=e.message),
        )
    except ExportError as e:
        logger.warning("document_retrieval_failed", error=e.describe())
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=error_response(code=ErrorCodes.RETRIEVAL_FAILED, message=e.describe()),
        )

    return success_response(
        data={
            "documentReferenceId": retrieved.document_reference_id,
            "binaryId": retrieved.binary_id,
            "contentType": retrieved.content_type,
            "size": retrieved.size,
            "data": base64.b64encode(retrieved.content).decode("ascii"),
        }
    )
