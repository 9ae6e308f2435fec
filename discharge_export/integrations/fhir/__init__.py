"""
FHIR Integration Package

Provides the FHIR R4 client used against both ends of the export pipeline.

Components:
- FHIRClient: Generic FHIR R4 client with status classification and rate limiting
- SourceEHRClient: Read-only source EHR adapter (Cerner client credentials, Epic JWT assertion)
- FHIR Models: Typed representations of Patient, Binary, DocumentReference and Composition

Usage:
    from discharge_export.integrations.fhir import FHIRClient, FHIRClientConfig, FHIRResourceType

    destination = FHIRClient(FHIRClientConfig(base_url="https://fhir.example.com/R4"))
    await destination.initialize()
    doc = await destination.read(FHIRResourceType.DOCUMENT_REFERENCE, "123")
"""

# Client
from .fhir_client import (
    FHIRAuthenticationError,
    FHIRAuthorizationError,
    FHIRClient,
    FHIRClientConfig,
    FHIRConflictError,
    FHIRConnectionError,
    FHIRError,
    FHIRNotFoundError,
    FHIRPreconditionError,
    FHIRRateLimitError,
    FHIRServerError,
    FHIRTimeoutError,
    FHIRValidationError,
    FHIRWriteResult,
)

# Models
from .fhir_models import (
    Attachment,
    CodeableConcept,
    Coding,
    FHIRBinary,
    FHIRComposition,
    FHIRDocumentReference,
    FHIRParseError,
    FHIRPatient,
    FHIRResourceType,
    Identifier,
    Meta,
    Reference,
)

# Source adapter
from .source_ehr_client import FetchedDocument, SourceAuthMode, SourceEHRClient, SourceEHRConfig, SourceToken

__all__ = [
    # Client
    "FHIRClient",
    "FHIRClientConfig",
    "FHIRWriteResult",
    "FHIRError",
    "FHIRAuthenticationError",
    "FHIRAuthorizationError",
    "FHIRNotFoundError",
    "FHIRRateLimitError",
    "FHIRServerError",
    "FHIRTimeoutError",
    "FHIRConnectionError",
    "FHIRConflictError",
    "FHIRValidationError",
    "FHIRPreconditionError",
    # Models
    "FHIRResourceType",
    "FHIRParseError",
    "Coding",
    "CodeableConcept",
    "Identifier",
    "Reference",
    "Meta",
    "Attachment",
    "FHIRPatient",
    "FHIRBinary",
    "FHIRDocumentReference",
    "FHIRComposition",
    # Source adapter
    "SourceAuthMode",
    "SourceEHRConfig",
    "SourceToken",
    "FetchedDocument",
    "SourceEHRClient",
]
