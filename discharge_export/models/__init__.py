"""
Export pipeline data model
"""

from discharge_export.models.export import (
    DocumentExportEvent,
    DuplicateCheckOutcome,
    EventStatus,
    ExportJob,
    ExportMetadata,
    ExportResult,
    ExportState,
    PatientMapping,
    PatientMappingOutcome,
)
from discharge_export.models.fingerprint import export_fingerprint

__all__ = [
    "DocumentExportEvent",
    "DuplicateCheckOutcome",
    "EventStatus",
    "ExportJob",
    "ExportMetadata",
    "ExportResult",
    "ExportState",
    "PatientMapping",
    "PatientMappingOutcome",
    "export_fingerprint",
]
