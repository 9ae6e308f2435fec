"""
Patient Identity Resolver

Maps a source-system patient to exactly one destination Patient per tenant.

Resolution order:
1. Existing mapping in the mapping store -> "found"
2. Fetch source Patient demographics
3. Destination Patient already carrying the source identifier (left behind by
   a run that created the Patient but failed before persisting the mapping)
4. Conditional create (If-None-Exist on the source identifier)
5. Compare-and-create the mapping; a loser deletes the Patient it created and
   adopts the winner's mapping
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from discharge_export.core.config import settings
from discharge_export.core.errors import (
    DestinationWriteFailed,
    ExportError,
    PatientResolutionFailed,
    SourceAuthExpired,
)
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.integrations.fhir import (
    FHIRClient,
    FHIRPatient,
    FHIRResourceType,
    Identifier,
    SourceEHRClient,
)
from discharge_export.models.export import PatientMapping
from discharge_export.services.destination_writer import translate_destination_errors
from discharge_export.services.patient_mapping_store import PatientMappingStore

logger = get_logger(__name__)

VALID_GENDERS = ("male", "female", "other", "unknown")
BIRTH_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class PatientResolution:
    destination_patient_id: str
    created: bool


def strip_null_characters(value: Any) -> Any:
    """Recursively remove NUL characters some EHRs embed in string fields"""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, list):
        return [strip_null_characters(v) for v in value]
    if isinstance(value, dict):
        return {k: strip_null_characters(v) for k, v in value.items()}
    return value


def build_destination_patient(
    source_patient: FHIRPatient,
    source_patient_id: str,
    identifier_system: str,
    tag_system: str,
    vendor: str,
) -> Dict[str, Any]:
    """
    Destination Patient resource derived from source demographics.

    Only names with a family or given part are kept, gender is coerced to a
    FHIR administrative gender and birthDate is kept only in YYYY-MM-DD form.
    """
    raw = strip_null_characters(source_patient._raw or source_patient.to_fhir())

    names = [n for n in raw.get("name", []) if isinstance(n, dict) and (n.get("family") or n.get("given"))]
    gender = raw.get("gender") if raw.get("gender") in VALID_GENDERS else "unknown"
    birth_date = raw.get("birthDate")
    if not (isinstance(birth_date, str) and BIRTH_DATE_PATTERN.match(birth_date)):
        birth_date = None

    identifier = Identifier(
        value=source_patient_id,
        system=identifier_system,
        use="usual",
        type_code="MR",
        type_display="Medical record number",
    )

    patient: Dict[str, Any] = {
        "resourceType": FHIRResourceType.PATIENT.value,
        "identifier": [identifier.to_fhir()],
        "active": raw.get("active") is not False,
        "gender": gender,
        "meta": {
            "tag": [
                {
                    "system": tag_system,
                    "code": f"imported-from-{vendor}",
                    "display": f"Imported from {vendor.title()}",
                },
                {
                    "system": tag_system,
                    "code": f"original-ehr-id-{source_patient_id}",
                    "display": f"Original EHR ID: {source_patient_id}",
                },
            ]
        },
    }
    if names:
        patient["name"] = names
    if birth_date:
        patient["birthDate"] = birth_date
    return patient


class PatientIdentityResolver:
    """Resolves (tenant, source patient) to a destination Patient id"""

    def __init__(
        self,
        source_client: SourceEHRClient,
        destination_client: FHIRClient,
        mapping_store: PatientMappingStore,
        destination_policy: Optional[RetryPolicy] = None,
        store_policy: Optional[RetryPolicy] = None,
        identifier_system: Optional[str] = None,
        tag_system: Optional[str] = None,
        vendor: Optional[str] = None,
    ):
        self.source_client = source_client
        self.destination_client = destination_client
        self.mapping_store = mapping_store
        self.destination_policy = destination_policy or default_retry_policy(DestinationWriteFailed)
        self.store_policy = store_policy or default_retry_policy(PatientResolutionFailed)
        self.identifier_system = identifier_system or settings.SOURCE_PATIENT_IDENTIFIER_SYSTEM
        self.tag_system = tag_system or settings.FHIR_TAG_SYSTEM
        self.vendor = vendor or settings.SOURCE_VENDOR

    async def resolve_patient(self, tenant_id: str, source_patient_id: str) -> PatientResolution:
        """
        Map a source patient to its destination Patient, creating one if needed.

        Raises:
            PatientResolutionFailed: source Patient unavailable, destination
                create failed, or the mapping could not be persisted
            SourceAuthExpired: source token rejected (caller refreshes)
        """
        log = logger.bind(tenant_id=tenant_id, source_patient_id=source_patient_id)

        mapping = await self.store_policy.call(self.mapping_store.get, tenant_id, source_patient_id)
        if mapping is not None:
            log.debug("patient_mapping_found", destination_patient_id=mapping.destination_patient_id)
            return PatientResolution(mapping.destination_patient_id, created=False)

        try:
            source_patient = await self.source_client.fetch_patient(tenant_id, source_patient_id)
        except SourceAuthExpired:
            raise
        except ExportError as e:
            raise PatientResolutionFailed(f"Source Patient/{source_patient_id} unavailable: {e.describe()}") from e

        try:
            destination_id, created_resource = await self._find_or_create_destination(
                source_patient, source_patient_id
            )
        except DestinationWriteFailed as e:
            raise PatientResolutionFailed(f"Destination Patient create failed: {e.message}") from e

        candidate = PatientMapping(
            tenant_id=tenant_id,
            source_patient_id=source_patient_id,
            destination_patient_id=destination_id,
        )
        # A store failure here leaves the destination Patient in place; the
        # identifier search in the next run adopts it.
        stored, won = await self.store_policy.call(self.mapping_store.create_if_absent, candidate)

        # A retried SET NX whose first reply was lost reads back our own mapping;
        # the Patient this call created cannot be anyone else's
        if won or (created_resource and stored.destination_patient_id == destination_id):
            log.info("patient_mapping_created", destination_patient_id=destination_id)
            return PatientResolution(destination_id, created=True)

        if stored.destination_patient_id != destination_id and created_resource:
            log.warning(
                "patient_mapping_conflict",
                discarded_patient_id=destination_id,
                winner_patient_id=stored.destination_patient_id,
            )
            await self._discard_patient(destination_id, log)
        return PatientResolution(stored.destination_patient_id, created=False)

    async def _find_or_create_destination(self, source_patient: FHIRPatient, source_patient_id: str):
        """Return (destination patient id, created by this call)"""
        token = f"{self.identifier_system}|{source_patient_id}"

        async def _search():
            with translate_destination_errors("Patient search"):
                return await self.destination_client.search(
                    FHIRResourceType.PATIENT, {"identifier": token}, max_results=1
                )

        existing = await self.destination_policy.call(_search)
        if existing:
            return existing[0].id, False

        resource = build_destination_patient(
            source_patient,
            source_patient_id,
            identifier_system=self.identifier_system,
            tag_system=self.tag_system,
            vendor=self.vendor,
        )

        async def _create():
            with translate_destination_errors("Patient create"):
                return await self.destination_client.create(
                    FHIRResourceType.PATIENT, dict(resource), if_none_exist=f"identifier={token}"
                )

        result = await self.destination_policy.call(_create)
        return result.resource_id, result.created

    async def _discard_patient(self, patient_id: str, log) -> None:
        try:
            with translate_destination_errors("Patient delete"):
                await self.destination_client.delete(FHIRResourceType.PATIENT, patient_id)
        except DestinationWriteFailed as e:
            log.error("patient_discard_failed", patient_id=patient_id, error=e.message)
