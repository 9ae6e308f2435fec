"""
Destination FHIR Writer

Writes the exported document into the destination store, in order:
1. Binary holding the raw content
2. DocumentReference pointing at the Binary, carrying the source document id
   and the export fingerprint as identifiers
3. Composition linking the DocumentReference to the patient and encounter

The Composition is the commit point. A failure after step 1 or 2 leaves an
incomplete set behind that the duplicate detector ignores, so a retry of the
whole job writes a fresh set.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from discharge_export.core.config import settings
from discharge_export.core.errors import DestinationWriteFailed, ExportError
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.integrations.fhir import (
    Attachment,
    CodeableConcept,
    Coding,
    FHIRBinary,
    FHIRClient,
    FHIRComposition,
    FHIRDocumentReference,
    FHIRError,
    FHIRParseError,
    FHIRResourceType,
    Identifier,
    Meta,
    Reference,
)
from discharge_export.integrations.fhir.fhir_models import (
    LOINC_CONSULT_NOTE,
    LOINC_DISCHARGE_SUMMARY,
    LOINC_SYSTEM,
    US_CORE_DOCUMENT_CATEGORY_SYSTEM,
)
from discharge_export.models.export import utc_now_iso
from discharge_export.models.fingerprint import export_fingerprint

logger = get_logger(__name__)

DISCHARGE_INSTRUCTIONS_CODES = ("74213-0", "8653-8")


@contextmanager
def translate_destination_errors(what: str):
    """Map FHIR client failures onto DestinationWriteFailed"""
    try:
        yield
    except ExportError:
        raise
    except FHIRParseError as e:
        raise DestinationWriteFailed(f"{what}: unexpected response: {e}", transient=False) from e
    except FHIRError as e:
        raise DestinationWriteFailed(f"{what} failed: {e}", transient=e.transient) from e


def document_type_tag(document_type: Optional[CodeableConcept]):
    """Tag code and display for a source document type (LOINC)"""
    if document_type:
        for coding in document_type.codings:
            if coding.system != LOINC_SYSTEM:
                continue
            if coding.code == LOINC_DISCHARGE_SUMMARY:
                return "discharge-summary", "Discharge Summary"
            if coding.code in DISCHARGE_INSTRUCTIONS_CODES:
                return "discharge-instructions", "Discharge Instructions"
    return "discharge-summary", "Discharge Summary"


def discharge_summary_type() -> CodeableConcept:
    return CodeableConcept.single(LOINC_SYSTEM, LOINC_DISCHARGE_SUMMARY, "Discharge summary")


def clinical_note_category() -> CodeableConcept:
    return CodeableConcept.single(US_CORE_DOCUMENT_CATEGORY_SYSTEM, "clinical-note", "Clinical Note")


@dataclass(frozen=True)
class WrittenDocument:
    """Ids of a complete destination resource set"""

    binary_id: str
    document_reference_id: str
    composition_id: str


class DestinationFHIRWriter:
    """Creates the Binary, DocumentReference and Composition for one export"""

    def __init__(
        self,
        client: FHIRClient,
        retry_policy: Optional[RetryPolicy] = None,
        tag_system: Optional[str] = None,
        source_document_identifier_system: Optional[str] = None,
        fingerprint_system: Optional[str] = None,
        vendor: Optional[str] = None,
    ):
        self.client = client
        self.retry_policy = retry_policy or default_retry_policy(DestinationWriteFailed)
        self.tag_system = tag_system or settings.FHIR_TAG_SYSTEM
        self.source_document_identifier_system = (
            source_document_identifier_system or settings.SOURCE_DOCUMENT_IDENTIFIER_SYSTEM
        )
        self.fingerprint_system = fingerprint_system or settings.EXPORT_FINGERPRINT_SYSTEM
        self.vendor = vendor or settings.SOURCE_VENDOR

    async def write_document(
        self,
        tenant_id: str,
        destination_patient_id: str,
        encounter_id: Optional[str],
        content: bytes,
        content_type: str,
        source_document_id: str,
        source_document: Optional[FHIRDocumentReference] = None,
    ) -> WrittenDocument:
        """
        Write the full resource set for one document.

        Raises:
            DestinationWriteFailed: any step failed after its retry budget
        """
        log = logger.bind(
            tenant_id=tenant_id,
            source_document_id=source_document_id,
            destination_patient_id=destination_patient_id,
        )
        fingerprint = export_fingerprint(tenant_id, destination_patient_id, source_document_id)
        date = (source_document.date if source_document else None) or utc_now_iso()
        authors = (source_document.authors if source_document else None) or ["System"]

        binary_id = await self._create(
            FHIRResourceType.BINARY,
            self._binary_resource(content, content_type, source_document),
            "Binary create",
        )
        log.debug("destination_binary_created", binary_id=binary_id)

        document_reference_id = await self._create(
            FHIRResourceType.DOCUMENT_REFERENCE,
            self._document_reference_resource(
                binary_id=binary_id,
                destination_patient_id=destination_patient_id,
                encounter_id=encounter_id,
                content_type=content_type,
                size=len(content),
                source_document_id=source_document_id,
                fingerprint=fingerprint,
                date=date,
                authors=authors,
                source_document=source_document,
            ),
            f"DocumentReference create (Binary/{binary_id} written)",
        )
        log.debug("destination_document_reference_created", document_reference_id=document_reference_id)

        composition_id = await self._create(
            FHIRResourceType.COMPOSITION,
            self._composition_resource(
                document_reference_id=document_reference_id,
                destination_patient_id=destination_patient_id,
                encounter_id=encounter_id,
                source_document_id=source_document_id,
                date=date,
                authors=authors,
            ),
            f"Composition create (DocumentReference/{document_reference_id} written)",
        )

        written = WrittenDocument(
            binary_id=binary_id,
            document_reference_id=document_reference_id,
            composition_id=composition_id,
        )
        log.info(
            "destination_document_written",
            binary_id=binary_id,
            document_reference_id=document_reference_id,
            composition_id=composition_id,
        )
        return written

    async def discard(self, written: WrittenDocument) -> List[str]:
        """
        Delete a resource set that lost a concurrent-export race.

        Deletes in reverse write order so the fingerprint-bearing
        DocumentReference goes before the Binary it points at.

        Returns:
            References that could not be deleted
        """
        failed = []
        targets = [
            (FHIRResourceType.COMPOSITION, written.composition_id),
            (FHIRResourceType.DOCUMENT_REFERENCE, written.document_reference_id),
            (FHIRResourceType.BINARY, written.binary_id),
        ]
        for resource_type, resource_id in targets:
            what = f"{resource_type.value}/{resource_id}"

            async def _delete():
                with translate_destination_errors(f"{what} delete"):
                    await self.client.delete(resource_type, resource_id)

            try:
                await self.retry_policy.call(_delete)
            except DestinationWriteFailed as e:
                logger.error("destination_discard_failed", resource=what, error=e.message)
                failed.append(what)
        return failed

    async def _create(self, resource_type: FHIRResourceType, resource: Dict[str, Any], what: str) -> str:
        async def _once() -> str:
            with translate_destination_errors(what):
                result = await self.client.create(resource_type, dict(resource))
            return result.resource_id

        return await self.retry_policy.call(_once)

    # =========================================================================
    # Resource Builders
    # =========================================================================

    def _tags(self, source_document_id: str) -> List[Coding]:
        return [
            Coding(self.tag_system, f"exported-from-{self.vendor}", f"Exported from {self.vendor.title()}"),
            Coding(self.tag_system, f"original-ehr-id-{source_document_id}", f"Original EHR ID: {source_document_id}"),
        ]

    def _binary_resource(
        self,
        content: bytes,
        content_type: str,
        source_document: Optional[FHIRDocumentReference],
    ) -> Dict[str, Any]:
        tag_code, tag_display = document_type_tag(source_document.type if source_document else None)
        meta = Meta(
            tags=[
                Coding(self.tag_system, tag_code, tag_display),
                Coding(self.tag_system, f"exported-from-{self.vendor}", f"Exported from {self.vendor.title()}"),
            ]
        )
        return FHIRBinary.from_bytes(content, content_type, meta=meta).to_fhir()

    def _document_reference_resource(
        self,
        binary_id: str,
        destination_patient_id: str,
        encounter_id: Optional[str],
        content_type: str,
        size: int,
        source_document_id: str,
        fingerprint: str,
        date: str,
        authors: List[str],
        source_document: Optional[FHIRDocumentReference],
    ) -> Dict[str, Any]:
        document_reference = FHIRDocumentReference(
            status="current",
            subject=Reference.to(FHIRResourceType.PATIENT, destination_patient_id),
            type=(source_document.type if source_document and source_document.type else discharge_summary_type()),
            category=[clinical_note_category()],
            date=date,
            authors=list(authors),
            content=[
                Attachment(
                    content_type=content_type,
                    url=f"Binary/{binary_id}",
                    size=size,
                    title="Discharge Summary",
                )
            ],
            encounter_ids=[encounter_id] if encounter_id else [],
            identifiers=[
                Identifier(value=source_document_id, system=self.source_document_identifier_system),
                Identifier(value=fingerprint, system=self.fingerprint_system),
            ],
            meta=Meta(tags=self._tags(source_document_id)),
        )
        return document_reference.to_fhir()

    def _composition_resource(
        self,
        document_reference_id: str,
        destination_patient_id: str,
        encounter_id: Optional[str],
        source_document_id: str,
        date: str,
        authors: List[str],
    ) -> Dict[str, Any]:
        composition = FHIRComposition(
            status="final",
            type=discharge_summary_type(),
            category=[clinical_note_category()],
            subject=Reference.to(FHIRResourceType.PATIENT, destination_patient_id),
            date=date,
            authors=list(authors),
            title="Discharge Summary",
            encounter=Reference.to(FHIRResourceType.ENCOUNTER, encounter_id) if encounter_id else None,
            section_title="Document Reference",
            section_code=CodeableConcept.single(LOINC_SYSTEM, LOINC_CONSULT_NOTE, "Consult note"),
            section_entries=[Reference.to(FHIRResourceType.DOCUMENT_REFERENCE, document_reference_id)],
            meta=Meta(tags=self._tags(source_document_id)),
        )
        return composition.to_fhir()
