"""
Export data model

Value types that flow through the discharge export pipeline:

    ExportJob -> (pipeline run) -> ExportResult -> DocumentExportEvent

PatientMapping is the only record that outlives a job; it is owned by the
patient identity resolver and persisted in the mapping store.

Wire dictionaries use camelCase keys, matching the event schema consumed by
the downstream simplification and audit stages.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC timestamp"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ExportState(str, Enum):
    """Per-job pipeline states"""

    FETCHING = "fetching"
    RESOLVING_PATIENT = "resolving_patient"
    CHECKING_DUPLICATE = "checking_duplicate"
    ALREADY_EXPORTED = "already_exported"
    WRITING = "writing"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


class PatientMappingOutcome(str, Enum):
    FOUND = "found"
    CREATED = "created"


class DuplicateCheckOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ExportJob:
    """One unit of work, created by a webhook, batch request or polling sweep"""

    tenant_id: str
    source_patient_id: str
    source_document_id: str
    encounter_id: Optional[str] = None

    def __post_init__(self):
        for name in ("tenant_id", "source_patient_id", "source_document_id"):
            if not getattr(self, name):
                raise ValueError(f"{name} is required")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportJob":
        return cls(
            tenant_id=data.get("tenantId", ""),
            source_patient_id=data.get("sourcePatientId", ""),
            source_document_id=data.get("sourceDocumentId", ""),
            encounter_id=data.get("encounterId") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "tenantId": self.tenant_id,
            "sourcePatientId": self.source_patient_id,
            "sourceDocumentId": self.source_document_id,
        }
        if self.encounter_id:
            data["encounterId"] = self.encounter_id
        return data


@dataclass(frozen=True)
class PatientMapping:
    """Durable (tenant, source patient) -> destination patient association"""

    tenant_id: str
    source_patient_id: str
    destination_patient_id: str
    created_at: str = field(default_factory=utc_now_iso)

    def to_json(self) -> str:
        return json.dumps(
            {
                "tenantId": self.tenant_id,
                "sourcePatientId": self.source_patient_id,
                "destinationPatientId": self.destination_patient_id,
                "createdAt": self.created_at,
            }
        )

    @classmethod
    def from_json(cls, raw) -> "PatientMapping":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            tenant_id=data["tenantId"],
            source_patient_id=data["sourcePatientId"],
            destination_patient_id=data["destinationPatientId"],
            created_at=data.get("createdAt", ""),
        )


@dataclass(frozen=True)
class ExportMetadata:
    """Outcome details carried on every ExportResult"""

    export_timestamp: str = field(default_factory=utc_now_iso)
    original_size: Optional[int] = None
    content_type: Optional[str] = None
    patient_mapping: Optional[PatientMappingOutcome] = None
    duplicate_check: Optional[DuplicateCheckOutcome] = None
    vendor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"exportTimestamp": self.export_timestamp}
        if self.original_size is not None:
            data["originalSize"] = self.original_size
        if self.content_type:
            data["contentType"] = self.content_type
        if self.patient_mapping:
            data["patientMapping"] = self.patient_mapping.value
        if self.duplicate_check:
            data["duplicateCheck"] = self.duplicate_check.value
        if self.vendor:
            data["vendor"] = self.vendor
        return data


@dataclass(frozen=True)
class ExportResult:
    """Terminal, immutable outcome of one ExportJob"""

    success: bool
    source_document_id: str
    source_patient_id: str
    metadata: ExportMetadata = field(default_factory=ExportMetadata)
    destination_binary_id: Optional[str] = None
    destination_document_reference_id: Optional[str] = None
    destination_composition_id: Optional[str] = None
    destination_patient_id: Optional[str] = None
    encounter_id: Optional[str] = None
    error: Optional[str] = None
    # Set when the destination write completed but the notification did not go out
    publish_error: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.metadata.duplicate_check == DuplicateCheckOutcome.DUPLICATE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "sourceDocumentId": self.source_document_id,
            "sourcePatientId": self.source_patient_id,
            "metadata": self.metadata.to_dict(),
        }
        optional = {
            "destinationBinaryId": self.destination_binary_id,
            "destinationDocumentReferenceId": self.destination_document_reference_id,
            "destinationCompositionId": self.destination_composition_id,
            "destinationPatientId": self.destination_patient_id,
            "encounterId": self.encounter_id,
            "error": self.error,
            "publishError": self.publish_error,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass(frozen=True)
class DocumentExportEvent:
    """Notification published once per terminal job"""

    document_reference_id: str
    tenant_id: str
    export_timestamp: str
    status: EventStatus
    patient_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    EVENT_TYPE = "document.exported"

    @classmethod
    def from_result(cls, job: ExportJob, result: ExportResult) -> "DocumentExportEvent":
        """Derive the event; destination ids travel in metadata"""
        metadata = {
            "destinationBinaryId": result.destination_binary_id,
            "destinationDocumentReferenceId": result.destination_document_reference_id,
            "destinationCompositionId": result.destination_composition_id,
            "destinationPatientId": result.destination_patient_id,
            "encounterId": result.encounter_id,
            "originalSize": result.metadata.original_size,
            "contentType": result.metadata.content_type,
            "patientMapping": result.metadata.patient_mapping.value if result.metadata.patient_mapping else None,
            "duplicateCheck": result.metadata.duplicate_check.value if result.metadata.duplicate_check else None,
        }
        return cls(
            document_reference_id=job.source_document_id,
            tenant_id=job.tenant_id,
            patient_id=job.source_patient_id,
            export_timestamp=result.metadata.export_timestamp,
            status=EventStatus.SUCCESS if result.success else EventStatus.FAILED,
            error=result.error,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "documentReferenceId": self.document_reference_id,
            "tenantId": self.tenant_id,
            "exportTimestamp": self.export_timestamp,
            "status": self.status.value,
        }
        if self.patient_id:
            data["patientId"] = self.patient_id
        if self.error:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    def to_message(self) -> Dict[str, Any]:
        """Envelope published on the event transport"""
        return {
            "eventType": self.EVENT_TYPE,
            "timestamp": utc_now_iso(),
            "data": self.to_dict(),
        }

    def attributes(self) -> Dict[str, str]:
        """Routing attributes for subscribers that filter without parsing"""
        return {
            "tenantId": self.tenant_id,
            "documentReferenceId": self.document_reference_id,
            "status": self.status.value,
        }
