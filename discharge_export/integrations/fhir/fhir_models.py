"""
FHIR R4 Resource Models

Internal representations of the FHIR R4 resources the discharge export
pipeline reads and writes. Maps FHIR JSON to typed Python dataclasses and
validates required fields at the boundary, so the pipeline never walks
untyped JSON.

Supported Resources:
- Patient: Demographics and identifiers (source read, destination create)
- Binary: Raw document bytes
- DocumentReference: Document metadata pointing at a Binary
- Composition: Discharge summary linking the DocumentReference to patient/encounter
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


LOINC_SYSTEM = "http://loinc.org"
LOINC_DISCHARGE_SUMMARY = "18842-5"
LOINC_CONSULT_NOTE = "11488-4"
US_CORE_DOCUMENT_CATEGORY_SYSTEM = "http://hl7.org/fhir/us/core/CodeSystem/us-core-documentreference-category"
V2_IDENTIFIER_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"


# ==============================================================================
# Enums
# ==============================================================================


class FHIRResourceType(str, Enum):
    """Supported FHIR resource types"""

    PATIENT = "Patient"
    BINARY = "Binary"
    DOCUMENT_REFERENCE = "DocumentReference"
    COMPOSITION = "Composition"
    ENCOUNTER = "Encounter"


class FHIRParseError(ValueError):
    """FHIR JSON is missing fields this pipeline requires"""

    def __init__(self, resource_type: str, message: str):
        super().__init__(f"{resource_type}: {message}")
        self.resource_type = resource_type


def _require_type(data: Dict[str, Any], expected: FHIRResourceType) -> None:
    if not isinstance(data, dict):
        raise FHIRParseError(expected.value, "resource is not a JSON object")
    actual = data.get("resourceType")
    if actual != expected.value:
        raise FHIRParseError(expected.value, f"unexpected resourceType {actual!r}")


# ==============================================================================
# Base Classes
# ==============================================================================


@dataclass
class Coding:
    """FHIR Coding - a single code in a code system"""

    system: str
    code: str
    display: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "Coding":
        return cls(
            system=data.get("system", ""),
            code=data.get("code", ""),
            display=data.get("display"),
        )

    def to_fhir(self) -> Dict[str, Any]:
        coding = {"system": self.system, "code": self.code}
        if self.display:
            coding["display"] = self.display
        return coding


@dataclass
class CodeableConcept:
    """FHIR CodeableConcept - coded value with text"""

    codings: List[Coding] = field(default_factory=list)
    text: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Optional[Dict[str, Any]]) -> Optional["CodeableConcept"]:
        """Parse from FHIR JSON"""
        if not data:
            return None

        return cls(
            codings=[Coding.from_fhir(c) for c in data.get("coding", [])],
            text=data.get("text"),
        )

    @classmethod
    def single(cls, system: str, code: str, display: Optional[str] = None) -> "CodeableConcept":
        return cls(codings=[Coding(system=system, code=code, display=display)])

    def has_code(self, system: str, code: str) -> bool:
        return any(c.system == system and c.code == code for c in self.codings)

    def to_fhir(self) -> Dict[str, Any]:
        concept: Dict[str, Any] = {"coding": [c.to_fhir() for c in self.codings]}
        if self.text:
            concept["text"] = self.text
        return concept


@dataclass
class Identifier:
    """FHIR Identifier - MRN, source document id, export fingerprint"""

    value: str
    system: str
    use: Optional[str] = None
    type_code: Optional[str] = None
    type_display: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "Identifier":
        """Parse from FHIR JSON"""
        type_info = data.get("type", {})
        codings = type_info.get("coding", [])
        type_coding = codings[0] if codings else {}

        return cls(
            value=data.get("value", ""),
            system=data.get("system", ""),
            use=data.get("use"),
            type_code=type_coding.get("code"),
            type_display=type_coding.get("display"),
        )

    @property
    def token(self) -> str:
        """Search token form (system|value)"""
        return f"{self.system}|{self.value}"

    def to_fhir(self) -> Dict[str, Any]:
        ident: Dict[str, Any] = {"system": self.system, "value": self.value}
        if self.use:
            ident["use"] = self.use
        if self.type_code:
            ident["type"] = {
                "coding": [
                    {
                        "system": V2_IDENTIFIER_TYPE_SYSTEM,
                        "code": self.type_code,
                        "display": self.type_display or self.type_code,
                    }
                ]
            }
        return ident


@dataclass
class Reference:
    """FHIR Reference - link to another resource"""

    reference: str  # e.g., "Patient/123"
    display: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Optional[Dict[str, Any]]) -> Optional["Reference"]:
        """Parse from FHIR JSON"""
        if not data:
            return None

        return cls(
            reference=data.get("reference", ""),
            display=data.get("display"),
        )

    @classmethod
    def to(cls, resource_type: FHIRResourceType, resource_id: str) -> "Reference":
        return cls(reference=f"{resource_type.value}/{resource_id}")

    def get_id(self) -> Optional[str]:
        """Extract resource ID from reference"""
        if not self.reference:
            return None
        if "/" in self.reference:
            return self.reference.rstrip("/").split("/")[-1]
        return self.reference

    def get_type(self) -> Optional[str]:
        parts = self.reference.rstrip("/").split("/")
        return parts[-2] if len(parts) >= 2 else None

    def to_fhir(self) -> Dict[str, Any]:
        ref: Dict[str, Any] = {"reference": self.reference}
        if self.display:
            ref["display"] = self.display
        return ref


@dataclass
class Meta:
    """FHIR Meta - tags and server-assigned version info"""

    tags: List[Coding] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    version_id: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Optional[Dict[str, Any]]) -> "Meta":
        data = data or {}
        return cls(
            tags=[Coding.from_fhir(t) for t in data.get("tag", [])],
            last_updated=_parse_fhir_datetime(data.get("lastUpdated", "")),
            version_id=data.get("versionId"),
        )

    def has_tag(self, system: str, code: str) -> bool:
        return any(t.system == system and t.code == code for t in self.tags)

    def to_fhir(self) -> Dict[str, Any]:
        return {"tag": [t.to_fhir() for t in self.tags]}


@dataclass
class Attachment:
    """FHIR Attachment - inline base64 data or a URL to a Binary"""

    content_type: Optional[str] = None
    data: Optional[str] = None  # base64
    url: Optional[str] = None
    size: Optional[int] = None
    title: Optional[str] = None

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            content_type=data.get("contentType"),
            data=data.get("data"),
            url=data.get("url"),
            size=data.get("size"),
            title=data.get("title"),
        )

    @property
    def binary_id(self) -> Optional[str]:
        """Binary id when the URL points at a Binary resource"""
        if not self.url:
            return None
        ref = Reference(reference=self.url)
        if ref.get_type() != FHIRResourceType.BINARY.value:
            return None
        return ref.get_id()

    def to_fhir(self) -> Dict[str, Any]:
        attachment: Dict[str, Any] = {}
        if self.content_type:
            attachment["contentType"] = self.content_type
        if self.data is not None:
            attachment["data"] = self.data
        if self.url:
            attachment["url"] = self.url
        if self.size is not None:
            attachment["size"] = self.size
        if self.title:
            attachment["title"] = self.title
        return attachment


# ==============================================================================
# Resource Models
# ==============================================================================


@dataclass
class FHIRPatient:
    """FHIR Patient resource"""

    id: Optional[str] = None
    identifiers: List[Identifier] = field(default_factory=list)
    active: bool = True

    # Demographics
    names: List[Dict[str, Any]] = field(default_factory=list)
    birth_date: Optional[str] = None
    gender: Optional[str] = None  # male, female, other, unknown

    meta: Meta = field(default_factory=Meta)

    # Raw FHIR data for extensibility
    _raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "FHIRPatient":
        """Parse from FHIR JSON"""
        _require_type(data, FHIRResourceType.PATIENT)
        return cls(
            id=data.get("id"),
            identifiers=[Identifier.from_fhir(i) for i in data.get("identifier", [])],
            active=data.get("active", True) is not False,
            names=list(data.get("name", [])),
            birth_date=data.get("birthDate"),
            gender=data.get("gender"),
            meta=Meta.from_fhir(data.get("meta")),
            _raw=data,
        )

    @property
    def family_name(self) -> Optional[str]:
        if not self.names:
            return None
        name = next((n for n in self.names if n.get("use") == "official"), self.names[0])
        return name.get("family")

    @property
    def full_name(self) -> str:
        """Get full display name"""
        if not self.names:
            return "Unknown"
        name = next((n for n in self.names if n.get("use") == "official"), self.names[0])
        parts = list(name.get("given", []))
        if name.get("family"):
            parts.append(name["family"])
        return " ".join(parts) if parts else "Unknown"

    def identifier_value(self, system: str) -> Optional[str]:
        for ident in self.identifiers:
            if ident.system == system:
                return ident.value
        return None

    def to_fhir(self) -> Dict[str, Any]:
        resource: Dict[str, Any] = {
            "resourceType": FHIRResourceType.PATIENT.value,
            "identifier": [i.to_fhir() for i in self.identifiers],
            "active": self.active,
            "meta": self.meta.to_fhir(),
        }
        if self.id:
            resource["id"] = self.id
        if self.names:
            resource["name"] = self.names
        if self.gender:
            resource["gender"] = self.gender
        if self.birth_date:
            resource["birthDate"] = self.birth_date
        return resource


@dataclass
class FHIRBinary:
    """FHIR Binary resource holding raw document bytes"""

    content_type: str
    data: str  # base64
    id: Optional[str] = None
    meta: Meta = field(default_factory=Meta)

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "FHIRBinary":
        """Parse from FHIR JSON"""
        _require_type(data, FHIRResourceType.BINARY)
        if not data.get("contentType"):
            raise FHIRParseError("Binary", "contentType is required")
        return cls(
            id=data.get("id"),
            content_type=data["contentType"],
            data=data.get("data", ""),
            meta=Meta.from_fhir(data.get("meta")),
        )

    @classmethod
    def from_bytes(cls, content: bytes, content_type: str, meta: Optional[Meta] = None) -> "FHIRBinary":
        return cls(
            content_type=content_type,
            data=base64.b64encode(content).decode("ascii"),
            meta=meta or Meta(),
        )

    def decoded(self) -> bytes:
        """Decode the base64 payload"""
        try:
            return base64.b64decode(self.data or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise FHIRParseError("Binary", f"data is not valid base64: {e}")

    def to_fhir(self) -> Dict[str, Any]:
        resource: Dict[str, Any] = {
            "resourceType": FHIRResourceType.BINARY.value,
            "contentType": self.content_type,
            "data": self.data,
            "meta": self.meta.to_fhir(),
        }
        if self.id:
            resource["id"] = self.id
        return resource


@dataclass
class FHIRDocumentReference:
    """FHIR DocumentReference resource"""

    id: Optional[str] = None
    status: str = "current"
    subject: Optional[Reference] = None
    type: Optional[CodeableConcept] = None
    category: List[CodeableConcept] = field(default_factory=list)
    date: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    content: List[Attachment] = field(default_factory=list)
    encounter_ids: List[str] = field(default_factory=list)
    identifiers: List[Identifier] = field(default_factory=list)
    meta: Meta = field(default_factory=Meta)

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "FHIRDocumentReference":
        """Parse from FHIR JSON"""
        _require_type(data, FHIRResourceType.DOCUMENT_REFERENCE)

        encounter_ids = []
        for enc in (data.get("context") or {}).get("encounter", []):
            ref = Reference.from_fhir(enc)
            if ref and ref.get_id():
                encounter_ids.append(ref.get_id())

        authors = []
        for author in data.get("author", []):
            label = author.get("display") or author.get("reference")
            if label:
                authors.append(label)

        return cls(
            id=data.get("id"),
            status=data.get("status", "current"),
            subject=Reference.from_fhir(data.get("subject")),
            type=CodeableConcept.from_fhir(data.get("type")),
            category=[CodeableConcept.from_fhir(c) for c in data.get("category", []) if c],
            date=data.get("date"),
            authors=authors,
            content=[Attachment.from_fhir(c.get("attachment", {})) for c in data.get("content", [])],
            encounter_ids=encounter_ids,
            identifiers=[Identifier.from_fhir(i) for i in data.get("identifier", [])],
            meta=Meta.from_fhir(data.get("meta")),
        )

    @property
    def patient_id(self) -> Optional[str]:
        return self.subject.get_id() if self.subject else None

    @property
    def encounter_id(self) -> Optional[str]:
        return self.encounter_ids[0] if self.encounter_ids else None

    @property
    def primary_attachment(self) -> Optional[Attachment]:
        return self.content[0] if self.content else None

    def has_identifier(self, system: str, value: str) -> bool:
        return any(i.system == system and i.value == value for i in self.identifiers)

    def to_fhir(self) -> Dict[str, Any]:
        resource: Dict[str, Any] = {
            "resourceType": FHIRResourceType.DOCUMENT_REFERENCE.value,
            "status": self.status,
            "identifier": [i.to_fhir() for i in self.identifiers],
            "category": [c.to_fhir() for c in self.category],
            "author": [{"display": a} for a in self.authors],
            "content": [{"attachment": a.to_fhir()} for a in self.content],
            "meta": self.meta.to_fhir(),
        }
        if self.id:
            resource["id"] = self.id
        if self.type:
            resource["type"] = self.type.to_fhir()
        if self.subject:
            resource["subject"] = self.subject.to_fhir()
        if self.date:
            resource["date"] = self.date
        if self.encounter_ids:
            resource["context"] = {
                "encounter": [Reference.to(FHIRResourceType.ENCOUNTER, e).to_fhir() for e in self.encounter_ids]
            }
        return resource


@dataclass
class FHIRComposition:
    """FHIR Composition resource (structured discharge summary)"""

    title: str
    subject: Reference
    date: str
    type: CodeableConcept
    id: Optional[str] = None
    status: str = "final"
    category: List[CodeableConcept] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    encounter: Optional[Reference] = None
    identifier: Optional[Identifier] = None
    section_title: str = "Document Reference"
    section_code: Optional[CodeableConcept] = None
    section_entries: List[Reference] = field(default_factory=list)
    meta: Meta = field(default_factory=Meta)

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "FHIRComposition":
        """Parse from FHIR JSON"""
        _require_type(data, FHIRResourceType.COMPOSITION)
        if not data.get("subject"):
            raise FHIRParseError("Composition", "subject is required")

        sections = data.get("section", [])
        first_section = sections[0] if sections else {}
        entries = [Reference.from_fhir(e) for e in first_section.get("entry", []) if e]
        identifier = data.get("identifier")

        return cls(
            id=data.get("id"),
            status=data.get("status", "final"),
            title=data.get("title", ""),
            subject=Reference.from_fhir(data["subject"]),
            date=data.get("date", ""),
            type=CodeableConcept.from_fhir(data.get("type")) or CodeableConcept(),
            category=[CodeableConcept.from_fhir(c) for c in data.get("category", []) if c],
            authors=[a.get("display", "") for a in data.get("author", [])],
            encounter=Reference.from_fhir(data.get("encounter")),
            identifier=Identifier.from_fhir(identifier) if identifier else None,
            section_title=first_section.get("title", ""),
            section_code=CodeableConcept.from_fhir(first_section.get("code")),
            section_entries=entries,
            meta=Meta.from_fhir(data.get("meta")),
        )

    @property
    def document_reference_id(self) -> Optional[str]:
        """First section entry pointing at a DocumentReference"""
        for entry in self.section_entries:
            if entry.get_type() == FHIRResourceType.DOCUMENT_REFERENCE.value:
                return entry.get_id()
        return None

    def to_fhir(self) -> Dict[str, Any]:
        section: Dict[str, Any] = {
            "title": self.section_title,
            "entry": [e.to_fhir() for e in self.section_entries],
        }
        if self.section_code:
            section["code"] = self.section_code.to_fhir()

        resource: Dict[str, Any] = {
            "resourceType": FHIRResourceType.COMPOSITION.value,
            "status": self.status,
            "type": self.type.to_fhir(),
            "category": [c.to_fhir() for c in self.category],
            "subject": self.subject.to_fhir(),
            "date": self.date,
            "author": [{"display": a} for a in self.authors],
            "title": self.title,
            "section": [section],
            "meta": self.meta.to_fhir(),
        }
        if self.id:
            resource["id"] = self.id
        if self.encounter:
            resource["encounter"] = self.encounter.to_fhir()
        if self.identifier:
            resource["identifier"] = self.identifier.to_fhir()
        return resource


# ==============================================================================
# Helper Functions
# ==============================================================================


def _parse_fhir_datetime(value: str) -> Optional[datetime]:
    """Parse FHIR datetime string"""
    if not value:
        return None

    # Try various formats
    formats = [
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%dT%H:%M:%SZ",
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            parsed = datetime.strptime(value.replace("+00:00", "Z"), fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    logger.warning(f"Could not parse FHIR datetime: {value}")
    return None


__all__ = [
    "LOINC_SYSTEM",
    "LOINC_DISCHARGE_SUMMARY",
    "LOINC_CONSULT_NOTE",
    "US_CORE_DOCUMENT_CATEGORY_SYSTEM",
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
]
