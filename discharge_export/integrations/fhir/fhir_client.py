"""
FHIR R4 Client Service

Generic FHIR R4 client with:
- Resource read, search, create and delete operations
- Binary reads answered with either the resource JSON or raw content
- Conditional create (If-None-Exist)
- HTTP status classification into a typed error family
- Rate limiting
- Request statistics

Retries are not performed here. Each caller owns a RetryPolicy and decides
which classified failures are worth another attempt.

Designed to be extended by EHR-specific adapters (Epic, Cerner, etc.)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .fhir_models import (
    FHIRBinary,
    FHIRComposition,
    FHIRDocumentReference,
    FHIRParseError,
    FHIRPatient,
    FHIRResourceType,
)

logger = logging.getLogger(__name__)


# ==============================================================================
# Exceptions
# ==============================================================================


class FHIRError(Exception):
    """Base FHIR error"""

    transient = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FHIRAuthenticationError(FHIRError):
    """Authentication failed"""


class FHIRAuthorizationError(FHIRError):
    """Authorization denied"""


class FHIRNotFoundError(FHIRError):
    """Resource not found (or gone)"""


class FHIRRateLimitError(FHIRError):
    """Rate limit exceeded"""

    transient = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, 429)
        self.retry_after = retry_after


class FHIRServerError(FHIRError):
    """Server error"""

    transient = True


class FHIRTimeoutError(FHIRError):
    """Request timeout"""

    transient = True


class FHIRConnectionError(FHIRError):
    """Network-level failure before a response was received"""

    transient = True


class FHIRConflictError(FHIRError):
    """Resource conflict (version mismatch or duplicate)"""


class FHIRValidationError(FHIRError):
    """Resource validation failed"""

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None, status_code: int = 400):
        super().__init__(message, status_code)
        self.issues = issues or []


class FHIRPreconditionError(FHIRError):
    """Precondition failed (ETag mismatch or ambiguous conditional create)"""


# ==============================================================================
# Write Operation Models
# ==============================================================================


@dataclass
class FHIRWriteResult:
    """Result of a FHIR write operation"""

    success: bool
    resource_id: Optional[str] = None
    location: Optional[str] = None
    operation: str = ""  # create, delete
    resource_type: str = ""
    # False when a conditional create matched an existing resource
    created: bool = True
    resource: Optional[Dict[str, Any]] = None


# ==============================================================================
# Configuration
# ==============================================================================


@dataclass
class FHIRClientConfig:
    """Configuration for FHIR client"""

    base_url: str
    timeout_seconds: int = 30

    # Static bearer token (adapters override get_access_token instead)
    access_token: Optional[str] = None
    # Refresh and replay once on 401; disabled when the caller handles expiry
    refresh_on_unauthorized: bool = True

    # Rate limiting
    requests_per_second: float = 10.0
    burst_limit: int = 20

    # Pagination
    default_page_size: int = 50
    max_page_size: int = 200

    # Headers
    default_headers: Dict[str, str] = field(
        default_factory=lambda: {
            "Accept": "application/fhir+json",
            "Content-Type": "application/fhir+json",
        }
    )


@dataclass
class FHIRClientStats:
    """Aggregate statistics for FHIR client"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    requests_by_resource: Dict[str, int] = field(default_factory=dict)
    errors_by_type: Dict[str, int] = field(default_factory=dict)


# ==============================================================================
# Rate Limiter
# ==============================================================================


class TokenBucketRateLimiter:
    """Token bucket rate limiter"""

    def __init__(self, rate: float, burst: int):
        self.rate = rate  # tokens per second
        self.burst = burst  # max tokens
        self.tokens = burst
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Acquire a token, return wait time if any"""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens >= 1:
                self.tokens -= 1
                return 0.0
            else:
                wait_time = (1 - self.tokens) / self.rate
                self.tokens = 0
                return wait_time


# ==============================================================================
# FHIR Client
# ==============================================================================


class FHIRClient:
    """
    Generic FHIR R4 client.

    Usage:
        config = FHIRClientConfig(base_url="https://fhir.example.com/R4")
        client = FHIRClient(config)
        await client.initialize()

        patient = await client.read(FHIRResourceType.PATIENT, "123")
        docs = await client.search(FHIRResourceType.DOCUMENT_REFERENCE, {"patient": "123"})
    """

    # Resource type to model class mapping
    RESOURCE_MODELS = {
        FHIRResourceType.PATIENT: FHIRPatient,
        FHIRResourceType.BINARY: FHIRBinary,
        FHIRResourceType.DOCUMENT_REFERENCE: FHIRDocumentReference,
        FHIRResourceType.COMPOSITION: FHIRComposition,
    }

    def __init__(self, config: FHIRClientConfig):
        self.config = config

        self._session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = TokenBucketRateLimiter(
            rate=config.requests_per_second,
            burst=config.burst_limit,
        )
        self._stats = FHIRClientStats()
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize HTTP session"""
        if self._initialized:
            return

        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            headers=self.config.default_headers,
        )
        self._initialized = True
        logger.info(f"FHIRClient initialized for {self.config.base_url}")

    async def close(self) -> None:
        """Close HTTP session"""
        if self._session:
            await self._session.close()
            self._session = None
            self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # Authentication (to be overridden by adapters)
    # =========================================================================

    async def get_access_token(self) -> Optional[str]:
        """
        Get access token for authenticated requests.
        Override in subclass for OAuth/SMART on FHIR.
        """
        return self.config.access_token

    async def refresh_access_token(self) -> Optional[str]:
        """
        Refresh access token.
        Override in subclass for OAuth/SMART on FHIR.
        """
        return None

    async def _get_auth_headers(self) -> Dict[str, str]:
        """Get authentication headers"""
        token = await self.get_access_token()
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def read(self, resource_type: FHIRResourceType, resource_id: str) -> Optional[Any]:
        """
        Read a single resource by ID.

        Returns:
            Parsed resource model, or None if the resource is not found or gone

        Raises:
            FHIRParseError: If the body is not JSON or the resource is missing required fields
        """
        url = f"{self.config.base_url}/{resource_type.value}/{resource_id}"
        try:
            _, response_data, _ = await self._request("GET", url, resource_type.value, "read")
        except FHIRNotFoundError:
            return None

        return self._parse(resource_type, _json_body(resource_type.value, response_data))

    async def read_binary(self, binary_id: str) -> Optional[Tuple[bytes, Optional[str]]]:
        """
        Read Binary content.

        Depending on content negotiation a server answers with the Binary resource
        (base64 ``data``) or with the document bytes and their Content-Type.

        Returns:
            Tuple of (content, content_type), or None if the Binary is not found or gone

        Raises:
            FHIRParseError: If the body is neither a Binary resource nor raw content
        """
        url = f"{self.config.base_url}/{FHIRResourceType.BINARY.value}/{binary_id}"
        try:
            _, body, headers = await self._request(
                "GET",
                url,
                FHIRResourceType.BINARY.value,
                "read",
                extra_headers={"Accept": "application/fhir+json, */*;q=0.8"},
            )
        except FHIRNotFoundError:
            return None

        if isinstance(body, bytes) and body:
            content_type = _header(headers, "Content-Type")
            return body, content_type.split(";")[0].strip() if content_type else None

        binary = self._parse(FHIRResourceType.BINARY, _json_body(FHIRResourceType.BINARY.value, body))
        return binary.decoded(), binary.content_type

    async def search(
        self,
        resource_type: FHIRResourceType,
        params: Dict[str, Any],
        max_results: Optional[int] = None,
    ) -> List[Any]:
        """
        Search for resources, following bundle "next" links.

        Args:
            resource_type: FHIR resource type
            params: Search parameters (list values repeat the parameter)
            max_results: Maximum results to return

        Returns:
            List of parsed resource models
        """
        url = f"{self.config.base_url}/{resource_type.value}"
        params = dict(params)
        if "_count" not in params:
            params["_count"] = min(
                max_results or self.config.default_page_size,
                self.config.max_page_size,
            )

        results: List[Any] = []
        _, page_data, _ = await self._request("GET", url, resource_type.value, "search", params=params)
        page_data = _json_body("Bundle", page_data, allow_empty=True)

        while page_data:
            for entry in page_data.get("entry", []):
                resource = entry.get("resource", {})
                # Bundles may carry OperationOutcome entries alongside matches
                if resource.get("resourceType") != resource_type.value:
                    continue
                results.append(self._parse(resource_type, resource))
                if max_results and len(results) >= max_results:
                    return results

            next_url = self._get_next_link(page_data)
            if not next_url:
                break
            _, page_data, _ = await self._request("GET", next_url, resource_type.value, "search")
            page_data = _json_body("Bundle", page_data, allow_empty=True)

        return results

    def _get_next_link(self, bundle: Dict[str, Any]) -> Optional[str]:
        """Get next page URL from bundle"""
        links = bundle.get("link", [])
        for link in links:
            if link.get("relation") == "next":
                return link.get("url")
        return None

    def _parse(self, resource_type: FHIRResourceType, data: Dict[str, Any]) -> Any:
        model_class = self.RESOURCE_MODELS.get(resource_type)
        if model_class:
            return model_class.from_fhir(data)
        return data

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def create(
        self,
        resource_type: FHIRResourceType,
        resource: Dict[str, Any],
        if_none_exist: Optional[str] = None,
    ) -> FHIRWriteResult:
        """
        Create a new resource.

        Args:
            resource_type: FHIR resource type
            resource: Resource data (without id)
            if_none_exist: Conditional create criteria (e.g., "identifier=system|value")

        Returns:
            FHIRWriteResult with the resource ID; ``created`` is False when a
            conditional create matched an existing resource
        """
        resource["resourceType"] = resource_type.value
        url = f"{self.config.base_url}/{resource_type.value}"

        extra_headers = {}
        if if_none_exist:
            extra_headers["If-None-Exist"] = if_none_exist

        status, response_data, response_headers = await self._request(
            "POST",
            url,
            resource_type.value,
            "create",
            data=resource,
            extra_headers=extra_headers,
        )

        result = FHIRWriteResult(
            success=True,
            operation="create",
            resource_type=resource_type.value,
            created=status == 201,
            resource=response_data if isinstance(response_data, dict) else None,
        )

        if result.resource:
            result.resource_id = result.resource.get("id")

        if response_headers:
            result.location = _header(response_headers, "Location")

        # Servers may answer with an empty body and only a Location header
        if not result.resource_id and result.location:
            result.resource_id = _id_from_location(result.location, resource_type)

        if not result.resource_id:
            raise FHIRError(f"{resource_type.value} create returned no resource id", status)

        return result

    async def delete(self, resource_type: FHIRResourceType, resource_id: str) -> FHIRWriteResult:
        """
        Delete a resource. Deleting an already-absent resource succeeds.
        """
        url = f"{self.config.base_url}/{resource_type.value}/{resource_id}"
        try:
            await self._request("DELETE", url, resource_type.value, "delete")
        except FHIRNotFoundError:
            logger.debug(f"{resource_type.value}/{resource_id} already absent")

        return FHIRWriteResult(
            success=True,
            resource_id=resource_id,
            operation="delete",
            resource_type=resource_type.value,
        )

    # =========================================================================
    # HTTP Layer
    # =========================================================================

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Dict[str, str], Optional[Any]]:
        """
        Perform one HTTP exchange.

        Returns:
            Tuple of (status, response_headers, body): parsed JSON for JSON
            responses, raw bytes otherwise or when the JSON does not parse
        """
        if not self._session:
            await self.initialize()

        async with self._session.request(
            method,
            url,
            params=_query_items(params),
            json=data,
            headers=headers,
        ) as response:
            resp_headers = dict(response.headers)
            body = None
            if response.status != 204:
                raw = await response.read()
                body = raw or None
                if raw and (not response.content_type or "json" in response.content_type):
                    try:
                        body = json.loads(raw)
                    except ValueError:
                        # Includes UnicodeDecodeError; callers decide what bytes mean
                        body = raw
            return response.status, resp_headers, body

    async def _request(
        self,
        method: str,
        url: str,
        resource_type: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Optional[Any], Dict[str, str]]:
        """
        Make a single HTTP request and classify the outcome.

        Returns:
            Tuple of (status, body, response_headers) for 2xx responses

        Raises:
            FHIRError subclass describing the failure
        """
        # Rate limiting
        wait_time = await self._rate_limiter.acquire()
        if wait_time > 0:
            await asyncio.sleep(wait_time)

        refreshed = False
        while True:
            headers = await self._get_auth_headers()
            if extra_headers:
                headers.update(extra_headers)

            start_time = time.monotonic()
            try:
                status, resp_headers, body = await self._send(method, url, params=params, data=data, headers=headers)
            except asyncio.TimeoutError:
                error = FHIRTimeoutError(f"{operation} {resource_type} timed out")
                self._record_failure(resource_type, error)
                raise error
            except aiohttp.ClientError as e:
                error = FHIRConnectionError(f"Network error: {str(e)}")
                self._record_failure(resource_type, error)
                raise error

            self._record_request(resource_type, (time.monotonic() - start_time) * 1000)

            if status == 401 and self.config.refresh_on_unauthorized and not refreshed:
                refreshed = True
                if await self.refresh_access_token():
                    continue

            if 200 <= status < 300:
                self._stats.successful_requests += 1
                return status, body, resp_headers

            error = self._classify(status, body, resp_headers)
            self._record_failure(resource_type, error)
            raise error

    def _classify(self, status: int, body: Any, headers: Dict[str, str]) -> FHIRError:
        """Map a non-2xx response to the FHIR error family"""
        detail = _describe_body(body)

        if status == 400 or status == 422:
            issues = body.get("issue", []) if isinstance(body, dict) else [{"diagnostics": detail}]
            return FHIRValidationError(f"Validation failed: {detail}", issues=issues, status_code=status)
        if status == 401:
            return FHIRAuthenticationError("Authentication failed", status)
        if status == 403:
            return FHIRAuthorizationError("Authorization denied", status)
        if status in (404, 410):
            return FHIRNotFoundError("Resource not found", status)
        if status == 409:
            return FHIRConflictError(f"Conflict: {detail}", status)
        if status == 412:
            return FHIRPreconditionError(f"Precondition failed: {detail}", status)
        if status == 429:
            retry_after = _header(headers, "Retry-After")
            try:
                delay = float(retry_after) if retry_after else None
            except ValueError:
                delay = None
            return FHIRRateLimitError("Rate limit exceeded", retry_after=delay)
        if status >= 500:
            return FHIRServerError(f"Server error: {status}", status)
        return FHIRError(f"Unexpected response {status}: {detail}", status)

    def _record_request(self, resource_type: str, latency_ms: float) -> None:
        """Record request statistics"""
        self._stats.total_requests += 1
        self._stats.requests_by_resource[resource_type] = self._stats.requests_by_resource.get(resource_type, 0) + 1

        # Update average latency
        n = self._stats.total_requests
        self._stats.avg_latency_ms = (self._stats.avg_latency_ms * (n - 1) + latency_ms) / n

    def _record_failure(self, resource_type: str, error: FHIRError) -> None:
        self._stats.failed_requests += 1
        error_type = type(error).__name__
        self._stats.errors_by_type[error_type] = self._stats.errors_by_type.get(error_type, 0) + 1

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics"""
        return {
            "base_url": self.config.base_url,
            "total_requests": self._stats.total_requests,
            "successful_requests": self._stats.successful_requests,
            "failed_requests": self._stats.failed_requests,
            "avg_latency_ms": self._stats.avg_latency_ms,
            "requests_by_resource": self._stats.requests_by_resource,
            "errors_by_type": self._stats.errors_by_type,
        }


# ==============================================================================
# Helper Functions
# ==============================================================================


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup"""
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def _id_from_location(location: str, resource_type: FHIRResourceType) -> Optional[str]:
    """Extract the id from Location: .../Type/{id}/_history/{vid}"""
    parts = location.rstrip("/").split("/")
    if resource_type.value in parts:
        idx = parts.index(resource_type.value)
        if idx + 1 < len(parts):
            return parts[idx + 1]
    return None


def _query_items(params: Optional[Dict[str, Any]]) -> Optional[List[Tuple[str, str]]]:
    """Flatten search params; list values repeat the parameter"""
    if not params:
        return None
    items: List[Tuple[str, str]] = []
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            items.extend((key, str(v)) for v in value)
        else:
            items.append((key, str(value)))
    return items


def _json_body(what: str, body: Any, allow_empty: bool = False) -> Optional[Dict[str, Any]]:
    """A 2xx body must be a JSON object; anything else is unparseable"""
    if isinstance(body, dict) or (allow_empty and body is None):
        return body
    if body is None:
        raise FHIRParseError(what, "response body is empty")
    raise FHIRParseError(what, f"response body is not a JSON resource: {_describe_body(body)!r}")


def _describe_body(body: Any) -> str:
    if isinstance(body, dict):
        diagnostics = [i.get("diagnostics", "") for i in body.get("issue", []) if i.get("diagnostics")]
        if diagnostics:
            return "; ".join(diagnostics)[:200]
        return json.dumps(body)[:200]
    if isinstance(body, bytes):
        return body[:200].decode("utf-8", errors="replace")
    return str(body or "")[:200]


__all__ = [
    "FHIRClient",
    "FHIRClientConfig",
    "FHIRClientStats",
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
    "TokenBucketRateLimiter",
]
