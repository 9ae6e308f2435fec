"""
Duplicate Detector

Decides whether a source document was already exported for a destination
patient. Read-only.

The export commit marker in the mapping store is authoritative: the
orchestrator claims it (compare-and-create on the export fingerprint) after a
complete write, so at most one DocumentReference ever owns a fingerprint.

Without a marker, destination DocumentReferences carrying the fingerprint
identifier are searched. An export counts only once its Composition exists:
the Composition is the last resource the writer creates, so a
DocumentReference without one is an interrupted write and is ignored. The
earliest complete set by (Composition meta.lastUpdated, DocumentReference id)
is returned as the candidate the orchestrator then tries to commit.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from discharge_export.core.config import settings
from discharge_export.core.errors import DestinationWriteFailed
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.integrations.fhir import (
    FHIRClient,
    FHIRComposition,
    FHIRDocumentReference,
    FHIRResourceType,
)
from discharge_export.models.fingerprint import export_fingerprint
from discharge_export.services.destination_writer import translate_destination_errors
from discharge_export.services.patient_mapping_store import PatientMappingStore

logger = get_logger(__name__)

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ExistingExport:
    """A complete destination resource set already written for a source document"""

    document_reference_id: str
    composition_id: str
    binary_id: Optional[str] = None
    committed_at: Optional[datetime] = None

    @property
    def sort_key(self):
        return (self.committed_at or _NEVER, self.document_reference_id)


@dataclass(frozen=True)
class DuplicateCheck:
    duplicate: bool
    existing: Optional[ExistingExport] = None
    # False when ``existing`` was found by search and nobody has claimed it yet
    committed: bool = False

    @property
    def existing_document_reference_id(self) -> Optional[str]:
        return self.existing.document_reference_id if self.existing else None


class DuplicateDetector:
    """Commit marker and fingerprint lookup against destination DocumentReferences"""

    def __init__(
        self,
        client: FHIRClient,
        commit_store: PatientMappingStore,
        retry_policy: Optional[RetryPolicy] = None,
        fingerprint_system: Optional[str] = None,
    ):
        self.client = client
        self.commit_store = commit_store
        self.retry_policy = retry_policy or default_retry_policy(DestinationWriteFailed)
        self.fingerprint_system = fingerprint_system or settings.EXPORT_FINGERPRINT_SYSTEM

    async def is_duplicate(
        self,
        tenant_id: str,
        destination_patient_id: str,
        source_document_id: str,
    ) -> DuplicateCheck:
        """
        Check whether the document was already exported for this patient.

        Returns:
            DuplicateCheck carrying the committed export, or the earliest
            complete uncommitted candidate

        Raises:
            DestinationWriteFailed: lookup failed, or the committed
                DocumentReference no longer resolves to a complete export
        """
        fingerprint = export_fingerprint(tenant_id, destination_patient_id, source_document_id)
        committed_id = await self.retry_policy.call(lambda: self.commit_store.get_export_commit(fingerprint))

        if committed_id is not None:
            existing = await self.get_export(committed_id)
            if existing is None:
                raise DestinationWriteFailed(
                    f"Committed export DocumentReference/{committed_id} is missing or incomplete"
                )
            logger.info(
                "duplicate_export_detected",
                tenant_id=tenant_id,
                source_document_id=source_document_id,
                document_reference_id=committed_id,
            )
            return DuplicateCheck(duplicate=True, existing=existing, committed=True)

        exports = await self.find_exports(tenant_id, destination_patient_id, source_document_id)
        if not exports:
            return DuplicateCheck(duplicate=False)

        candidate = exports[0]
        logger.info(
            "uncommitted_export_detected",
            tenant_id=tenant_id,
            source_document_id=source_document_id,
            document_reference_id=candidate.document_reference_id,
            matches=len(exports),
        )
        return DuplicateCheck(duplicate=True, existing=candidate)

    async def get_export(self, document_reference_id: str) -> Optional[ExistingExport]:
        """The complete export rooted at a DocumentReference, or None"""

        async def _read() -> Optional[FHIRDocumentReference]:
            with translate_destination_errors("DocumentReference read"):
                return await self.client.read(FHIRResourceType.DOCUMENT_REFERENCE, document_reference_id)

        document = await self.retry_policy.call(_read)
        if document is None:
            return None
        return await self._complete_export(document)

    async def find_exports(
        self,
        tenant_id: str,
        destination_patient_id: str,
        source_document_id: str,
    ) -> List[ExistingExport]:
        """All complete exports carrying the fingerprint, earliest first"""
        fingerprint = export_fingerprint(tenant_id, destination_patient_id, source_document_id)
        params = {
            "patient": destination_patient_id,
            "identifier": f"{self.fingerprint_system}|{fingerprint}",
        }

        async def _search() -> List[FHIRDocumentReference]:
            with translate_destination_errors("DocumentReference search"):
                return await self.client.search(FHIRResourceType.DOCUMENT_REFERENCE, params)

        documents = await self.retry_policy.call(_search)

        exports = []
        for document in documents:
            # Some servers ignore unsupported search parameters; re-check locally
            if not document.has_identifier(self.fingerprint_system, fingerprint):
                continue
            existing = await self._complete_export(document)
            if existing is not None:
                exports.append(existing)
        return sorted(exports, key=lambda e: e.sort_key)

    async def _complete_export(self, document: FHIRDocumentReference) -> Optional[ExistingExport]:
        if document.status == "entered-in-error":
            return None

        composition = await self._composition_for(document.id)
        if composition is None:
            logger.debug("incomplete_export_ignored", document_reference_id=document.id)
            return None

        attachment = document.primary_attachment
        return ExistingExport(
            document_reference_id=document.id,
            composition_id=composition.id,
            binary_id=attachment.binary_id if attachment else None,
            committed_at=composition.meta.last_updated,
        )

    async def _composition_for(self, document_reference_id: str) -> Optional[FHIRComposition]:
        """Composition whose section references the DocumentReference"""
        params = {"entry": f"DocumentReference/{document_reference_id}"}

        async def _search():
            with translate_destination_errors("Composition search"):
                return await self.client.search(FHIRResourceType.COMPOSITION, params, max_results=1)

        compositions = await self.retry_policy.call(_search)
        return compositions[0] if compositions else None
