"""
In-process FHIR server and client doubles for the export pipeline tests.

FakeFHIRServer keeps resources in memory and answers the subset of the FHIR
REST API the pipeline uses: read, search (identifier, patient/subject, type,
entry), create with If-None-Exist, and delete. Reads of resources registered
with add_raw answer with raw bytes, as servers do for negotiated Binary
content. Every request yields to the event loop once, so concurrent jobs
interleave the way they would against a real server.
"""

import asyncio
import base64
import copy
import itertools
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from discharge_export.core.errors import SourceUnavailable
from discharge_export.core.resilience import RetryPolicy
from discharge_export.integrations.fhir import (
    FHIRClient,
    FHIRClientConfig,
    SourceAuthMode,
    SourceEHRClient,
    SourceEHRConfig,
)
from discharge_export.integrations.fhir.fhir_client import TokenBucketRateLimiter

SOURCE_BASE_URL = "https://source.example.org/fhir/r4"
DESTINATION_BASE_URL = "https://destination.example.org/fhir/r4"

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def fast_policy(*retry_on, max_attempts: int = 3) -> RetryPolicy:
    """Retry policy without backoff delays"""
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=0,
        max_delay_seconds=0,
        retry_on=tuple(retry_on),
    )


def operation_outcome(diagnostics: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "error", "code": "processing", "diagnostics": diagnostics}],
    }


@dataclass
class _InjectedFailure:
    method: Optional[str]
    resource_type: Optional[str]
    remaining: int
    status: Optional[int] = None
    exception: Optional[BaseException] = None
    body: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None

    def matches(self, method: str, resource_type: Optional[str]) -> bool:
        if self.remaining <= 0:
            return False
        if self.method and self.method != method:
            return False
        if self.resource_type and self.resource_type != resource_type:
            return False
        return True


class FakeFHIRServer:
    """Minimal in-memory FHIR R4 server"""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self.resources: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.requests: List[Tuple[str, Optional[str], Dict[str, str]]] = []
        self.honor_if_none_exist = True
        self.page_size: Optional[int] = None
        self.frozen_clock = False
        self._failures: List[_InjectedFailure] = []
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)
        self._pages: Dict[str, Dict[str, Any]] = {}
        self._raw: Dict[Tuple[str, str], Tuple[bytes, str]] = {}

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def add(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Store a resource as-is (assigning an id when missing)"""
        stored = copy.deepcopy(resource)
        resource_type = stored["resourceType"]
        stored.setdefault("id", f"{resource_type}-{next(self._ids)}")
        meta = stored.setdefault("meta", {})
        meta["lastUpdated"] = self._tick()
        meta.setdefault("versionId", "1")
        self.resources[resource_type][stored["id"]] = stored
        return stored

    def add_raw(self, resource_type: str, resource_id: str, content: bytes, content_type: str) -> None:
        """Answer reads of this resource with raw bytes instead of FHIR JSON"""
        self._raw[(resource_type, resource_id)] = (content, content_type)

    def get(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        return self.resources[resource_type].get(resource_id)

    def all(self, resource_type: str) -> List[Dict[str, Any]]:
        return list(self.resources[resource_type].values())

    def count(self, resource_type: str) -> int:
        return len(self.resources[resource_type])

    def requests_for(self, method: str, resource_type: Optional[str] = None) -> int:
        return sum(
            1 for m, rt, _ in self.requests if m == method and (resource_type is None or rt == resource_type)
        )

    def fail(
        self,
        method: Optional[str] = None,
        resource_type: Optional[str] = None,
        status: Optional[int] = None,
        exception: Optional[BaseException] = None,
        times: int = 1,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Answer the next ``times`` matching requests with ``status`` or raise ``exception``"""
        self._failures.append(
            _InjectedFailure(
                method=method,
                resource_type=resource_type,
                remaining=times,
                status=status,
                exception=exception,
                body=body,
                headers=headers,
            )
        )

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def handle(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Dict[str, str], Optional[Any]]:
        await asyncio.sleep(0)

        path = url[len(self.base_url):].strip("/") if url.startswith(self.base_url) else url.strip("/")
        parts = path.split("/") if path else []
        resource_type = parts[0] if parts and parts[0] != "_page" else None
        self.requests.append((method, resource_type, dict(headers or {})))

        for failure in self._failures:
            if failure.matches(method, resource_type):
                failure.remaining -= 1
                if failure.exception is not None:
                    raise failure.exception
                body = failure.body or operation_outcome(f"injected {failure.status}")
                return failure.status, dict(failure.headers or {}), body

        if parts and parts[0] == "_page":
            page = self._pages.pop(parts[1], None)
            if page is None:
                return 404, {}, operation_outcome("page expired")
            return 200, {}, page

        if method == "GET" and len(parts) == 2:
            if (parts[0], parts[1]) in self._raw:
                content, content_type = self._raw[(parts[0], parts[1])]
                return 200, {"Content-Type": content_type}, content
            resource = self.get(parts[0], parts[1])
            if resource is None:
                return 404, {}, operation_outcome(f"{parts[0]}/{parts[1]} not found")
            return 200, {"ETag": f'W/"{resource["meta"]["versionId"]}"'}, copy.deepcopy(resource)

        if method == "GET" and len(parts) == 1:
            return 200, {}, self._bundle(self._search(parts[0], params or {}))

        if method == "POST" and len(parts) == 1:
            return self._create(parts[0], data or {}, headers or {})

        if method == "DELETE" and len(parts) == 2:
            if self.resources[parts[0]].pop(parts[1], None) is None:
                return 404, {}, operation_outcome(f"{parts[0]}/{parts[1]} not found")
            return 204, {}, None

        return 400, {}, operation_outcome(f"unsupported {method} {path}")

    def _create(self, resource_type: str, data: Dict[str, Any], headers: Dict[str, str]):
        condition = headers.get("If-None-Exist")
        if condition and self.honor_if_none_exist:
            matches = self._search(resource_type, dict(parse_qsl(condition)))
            if len(matches) > 1:
                return 412, {}, operation_outcome("multiple matches for If-None-Exist")
            if matches:
                return 200, {}, copy.deepcopy(matches[0])

        resource = copy.deepcopy(data)
        resource.pop("id", None)
        stored = self.add(resource)
        location = f"{self.base_url}/{resource_type}/{stored['id']}/_history/1"
        return 201, {"Location": location, "ETag": 'W/"1"'}, copy.deepcopy(stored)

    def _search(self, resource_type: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        criteria = {k: v for k, v in params.items() if not k.startswith("_")}
        return [
            copy.deepcopy(r)
            for r in self.resources[resource_type].values()
            if all(_matches(r, name, value) for name, value in criteria.items())
        ]

    def _bundle(self, matches: List[Dict[str, Any]]) -> Dict[str, Any]:
        if self.page_size and len(matches) > self.page_size:
            first, rest = matches[: self.page_size], matches[self.page_size:]
        else:
            first, rest = matches, []

        bundle: Dict[str, Any] = {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": len(matches),
            "entry": [{"resource": r} for r in first],
            "link": [],
        }
        if rest:
            token = f"p{next(self._ids)}"
            self._pages[token] = self._bundle(rest)
            bundle["link"].append({"relation": "next", "url": f"{self.base_url}/_page/{token}"})
        return bundle

    def _tick(self) -> str:
        moment = _EPOCH if self.frozen_clock else _EPOCH + timedelta(seconds=next(self._ticks))
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def _matches(resource: Dict[str, Any], name: str, value: Any) -> bool:
    value = str(value)
    if name == "identifier":
        system, _, ident = value.rpartition("|")
        return any(
            i.get("value") == ident and (not system or i.get("system") == system)
            for i in resource.get("identifier", [])
        )
    if name in ("patient", "subject"):
        reference = (resource.get("subject") or {}).get("reference", "")
        return reference == value or reference == f"Patient/{value}"
    if name == "type":
        system, _, code = value.rpartition("|")
        codings = (resource.get("type") or {}).get("coding", [])
        return any(c.get("code") == code and (not system or c.get("system") == system) for c in codings)
    if name == "entry":
        return any(
            entry.get("reference") == value
            for section in resource.get("section", [])
            for entry in section.get("entry", [])
        )
    return True


# ==============================================================================
# Client doubles
# ==============================================================================


class FakeFHIRClient(FHIRClient):
    """FHIRClient whose HTTP exchange is served by a FakeFHIRServer"""

    def __init__(self, server: FakeFHIRServer, config: Optional[FHIRClientConfig] = None):
        super().__init__(
            config
            or FHIRClientConfig(
                base_url=server.base_url,
                requests_per_second=10000,
                burst_limit=10000,
            )
        )
        self.server = server

    async def _send(self, method, url, params=None, data=None, headers=None):
        return await self.server.handle(method, url, params=params, data=data, headers=headers)


class FakeSourceEHRClient(SourceEHRClient):
    """SourceEHRClient served by a FakeFHIRServer, with a stubbed token endpoint"""

    def __init__(
        self,
        server: FakeFHIRServer,
        source_config: Optional[SourceEHRConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(
            source_config or SourceEHRConfig(base_url=server.base_url, auth_mode=SourceAuthMode.NONE),
            retry_policy=retry_policy or fast_policy(SourceUnavailable),
        )
        self.server = server
        self._rate_limiter = TokenBucketRateLimiter(rate=10000, burst=10000)
        self.token_requests: List[Dict[str, str]] = []

    async def _send(self, method, url, params=None, data=None, headers=None):
        return await self.server.handle(method, url, params=params, data=data, headers=headers)

    async def _post_token_request(self, data, headers):
        self.token_requests.append(dict(data))
        return {"access_token": f"token-{len(self.token_requests)}", "token_type": "Bearer", "expires_in": 300}


# ==============================================================================
# Source fixtures
# ==============================================================================


def source_patient(
    patient_id: str,
    family: str = "Doe",
    given: Optional[List[str]] = None,
    gender: str = "female",
    birth_date: str = "1970-04-12",
) -> Dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "identifier": [{"system": "urn:oid:2.16.840.1.113883.3.787.0.0", "value": f"MRN-{patient_id}"}],
        "active": True,
        "name": [{"use": "official", "family": family, "given": given or ["Jane"]}],
        "gender": gender,
        "birthDate": birth_date,
    }


def source_document(
    document_id: str,
    patient_id: str,
    content: Optional[bytes] = b"Discharge summary: stable, follow up in 2 weeks.",
    content_type: str = "text/plain",
    binary_id: Optional[str] = None,
    encounter_id: Optional[str] = None,
    type_code: str = "18842-5",
) -> Dict[str, Any]:
    """Source DocumentReference with inline content, or pointing at ``binary_id``"""
    attachment: Dict[str, Any] = {"contentType": content_type}
    if binary_id:
        attachment["url"] = f"Binary/{binary_id}"
    elif content is not None:
        attachment["data"] = base64.b64encode(content).decode("ascii")

    document: Dict[str, Any] = {
        "resourceType": "DocumentReference",
        "id": document_id,
        "status": "current",
        "subject": {"reference": f"Patient/{patient_id}"},
        "type": {"coding": [{"system": "http://loinc.org", "code": type_code, "display": "Discharge summary"}]},
        "date": "2024-03-01T10:00:00Z",
        "author": [{"reference": "Practitioner/pr-1", "display": "Dr. Gregory House"}],
        "content": [{"attachment": attachment}],
    }
    if encounter_id:
        document["context"] = {"encounter": [{"reference": f"Encounter/{encounter_id}"}]}
    return document


def source_binary(binary_id: str, content: bytes, content_type: str = "application/pdf") -> Dict[str, Any]:
    return {
        "resourceType": "Binary",
        "id": binary_id,
        "contentType": content_type,
        "data": base64.b64encode(content).decode("ascii"),
    }


def seed_source(
    server: FakeFHIRServer,
    patient_id: str = "p-100",
    document_id: str = "doc-1",
    content: bytes = b"Discharge summary: stable, follow up in 2 weeks.",
    encounter_id: Optional[str] = None,
) -> None:
    """Add a patient (if absent) and an inline discharge document"""
    if server.get("Patient", patient_id) is None:
        server.add(source_patient(patient_id))
    server.add(source_document(document_id, patient_id, content=content, encounter_id=encounter_id))
