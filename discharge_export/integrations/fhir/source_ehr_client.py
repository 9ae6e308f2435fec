"""
Source EHR Client

Read-only FHIR R4 adapter for the EHR discharge documents are exported from.

Supports:
- Cerner system-account OAuth2 (client credentials, HTTP Basic)
- Epic SMART Backend Services (JWT client assertion signed RS384)
- Unauthenticated sandboxes
- Token caching with early refresh

Failures are translated into the export taxonomy at this boundary:
- SourceNotFound: DocumentReference, Binary or Patient is absent (never retried)
- SourceUnavailable: network error, timeout, 5xx, 429 (retried under the client's RetryPolicy)
- SourceAuthExpired: token rejected with 401 (the caller refreshes and may retry once)
- MalformedContent: unparseable response, missing attachment, undecodable content
  or a foreign subject
"""

import asyncio
import base64
import binascii
import logging
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
import jwt

from discharge_export.core.errors import (
    ExportError,
    MalformedContent,
    SourceAuthExpired,
    SourceNotFound,
    SourceUnavailable,
)
from discharge_export.core.resilience import RetryPolicy, default_retry_policy

from .fhir_client import (
    FHIRAuthenticationError,
    FHIRClient,
    FHIRClientConfig,
    FHIRError,
    FHIRNotFoundError,
)
from .fhir_models import FHIRDocumentReference, FHIRParseError, FHIRPatient, FHIRResourceType

logger = logging.getLogger(__name__)


# ==============================================================================
# Configuration
# ==============================================================================


class SourceAuthMode(str, Enum):
    """How the client obtains bearer tokens"""

    NONE = "none"
    CLIENT_CREDENTIALS = "client_credentials"  # Cerner system account
    JWT_ASSERTION = "jwt_assertion"  # Epic backend services


@dataclass
class SourceEHRConfig:
    """
    Source EHR adapter configuration.

    Credentials should be stored securely (env vars, secrets manager).
    """

    base_url: str
    vendor: str = "cerner"
    auth_mode: SourceAuthMode = SourceAuthMode.CLIENT_CREDENTIALS

    # OAuth2
    token_url: Optional[str] = None
    client_id: str = ""
    client_secret: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_pem: Optional[str] = None
    scope: str = ""

    # Token settings
    token_refresh_buffer_seconds: int = 60

    # Request settings
    timeout_seconds: int = 30

    # Search settings
    patient_identifier_system: str = ""
    discharge_document_type: str = "http://loinc.org|18842-5"
    sweep_page_size: int = 5

    def __post_init__(self):
        self.auth_mode = SourceAuthMode(self.auth_mode)
        if self.auth_mode != SourceAuthMode.NONE and not self.token_url:
            raise ValueError(f"auth mode {self.auth_mode.value} requires token_url")

    @classmethod
    def from_settings(cls, settings) -> "SourceEHRConfig":
        return cls(
            base_url=settings.SOURCE_FHIR_BASE_URL,
            vendor=settings.SOURCE_VENDOR,
            auth_mode=SourceAuthMode(settings.SOURCE_AUTH_MODE),
            token_url=settings.SOURCE_TOKEN_URL,
            client_id=settings.SOURCE_CLIENT_ID or "",
            client_secret=settings.SOURCE_CLIENT_SECRET,
            private_key_path=settings.SOURCE_PRIVATE_KEY_PATH,
            private_key_pem=settings.SOURCE_PRIVATE_KEY_PEM,
            scope=settings.SOURCE_SCOPE,
            token_refresh_buffer_seconds=settings.SOURCE_TOKEN_REFRESH_BUFFER_SECONDS,
            timeout_seconds=settings.FHIR_TIMEOUT_SECONDS,
            patient_identifier_system=settings.SOURCE_PATIENT_IDENTIFIER_SYSTEM,
            discharge_document_type=settings.SOURCE_DISCHARGE_DOCUMENT_TYPE,
            sweep_page_size=settings.SOURCE_SWEEP_PAGE_SIZE,
        )


@dataclass
class SourceToken:
    """OAuth2 token with metadata"""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 300
    scope: str = ""
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    def is_expiring_soon(self, buffer_seconds: int = 60) -> bool:
        return datetime.now(timezone.utc) >= (self.expires_at - timedelta(seconds=buffer_seconds))


@dataclass
class FetchedDocument:
    """A source DocumentReference together with its decoded content"""

    metadata: FHIRDocumentReference
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


# ==============================================================================
# Source EHR Client
# ==============================================================================


class SourceEHRClient(FHIRClient):
    """
    Read-only client for the source EHR.

    Usage:
        client = SourceEHRClient(SourceEHRConfig.from_settings(settings))
        await client.initialize()

        doc = await client.fetch_document("tenant-1", "doc-123")
        doc.content, doc.content_type, doc.size
    """

    def __init__(self, source_config: SourceEHRConfig, retry_policy: Optional[RetryPolicy] = None):
        self.source_config = source_config
        self.retry_policy = retry_policy or default_retry_policy(SourceUnavailable)

        fhir_config = FHIRClientConfig(
            base_url=source_config.base_url,
            timeout_seconds=source_config.timeout_seconds,
            # A 401 surfaces as SourceAuthExpired; the orchestrator refreshes
            refresh_on_unauthorized=False,
        )
        super().__init__(config=fhir_config)

        self._private_key: Optional[str] = None
        self._token: Optional[SourceToken] = None
        self._token_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize session and load signing credentials"""
        await super().initialize()

        if self.source_config.auth_mode == SourceAuthMode.JWT_ASSERTION and not self._private_key:
            self._private_key = self._load_private_key()

        logger.info(
            f"SourceEHRClient initialized for {self.source_config.vendor} "
            f"({self.source_config.auth_mode.value}) at {self.source_config.base_url}"
        )

    def _load_private_key(self) -> str:
        """Load private key for JWT signing"""
        if self.source_config.private_key_pem:
            return self.source_config.private_key_pem

        if self.source_config.private_key_path:
            try:
                with open(self.source_config.private_key_path, "r") as f:
                    return f.read()
            except FileNotFoundError:
                raise SourceUnavailable(
                    f"Private key not found: {self.source_config.private_key_path}",
                    transient=False,
                )

        key = os.environ.get("SOURCE_PRIVATE_KEY")
        if key:
            return key

        raise SourceUnavailable(
            "No private key provided. Set SOURCE_PRIVATE_KEY_PATH or SOURCE_PRIVATE_KEY_PEM.",
            transient=False,
        )

    # =========================================================================
    # OAuth2 Authentication
    # =========================================================================

    async def get_access_token(self) -> Optional[str]:
        """Get valid access token, refreshing if needed"""
        if self.source_config.auth_mode == SourceAuthMode.NONE:
            return None
        await self._ensure_token()
        return self._token.access_token if self._token else None

    async def refresh_access_token(self) -> Optional[str]:
        """Force token refresh"""
        async with self._token_lock:
            self._token = None
        return await self.get_access_token()

    async def _ensure_token(self) -> None:
        """Ensure we have a valid token"""
        async with self._token_lock:
            if self._token and not self._token.is_expiring_soon(self.source_config.token_refresh_buffer_seconds):
                return

            self._token = await self._fetch_token()

    async def _fetch_token(self) -> SourceToken:
        """Fetch a new access token for the configured auth mode"""
        if self.source_config.auth_mode == SourceAuthMode.JWT_ASSERTION:
            data, headers = self._jwt_assertion_request()
        else:
            data, headers = self._client_credentials_request()

        token_data = await self._post_token_request(data, headers)
        if "access_token" not in token_data:
            raise SourceUnavailable("Token response missing access_token", transient=False)

        return SourceToken(
            access_token=token_data["access_token"],
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=int(token_data.get("expires_in", 300)),
            scope=token_data.get("scope", ""),
        )

    def _client_credentials_request(self):
        """Cerner system account: client credentials over HTTP Basic"""
        credentials = f"{self.source_config.client_id}:{self.source_config.client_secret or ''}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        data = {"grant_type": "client_credentials"}
        if self.source_config.scope:
            data["scope"] = self.source_config.scope
        headers = {
            "Authorization": f"Basic {encoded}",
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        return data, headers

    def _jwt_assertion_request(self):
        """Epic backend services: signed JWT client assertion"""
        if not self._private_key:
            self._private_key = self._load_private_key()

        now = int(time.time())
        claims = {
            "iss": self.source_config.client_id,
            "sub": self.source_config.client_id,
            "aud": self.source_config.token_url,
            "jti": str(uuid.uuid4()),
            "exp": now + 300,  # 5 minutes (Epic max)
            "iat": now,
        }

        # Sign with RS384 (Epic requirement)
        try:
            assertion = jwt.encode(claims, self._private_key, algorithm="RS384")
        except Exception as e:
            raise SourceUnavailable(f"Failed to sign JWT: {e}", transient=False)

        data = {
            "grant_type": "client_credentials",
            "client_assertion_type": "urn:ietf:params:oauth:client-assertion-type:jwt-bearer",
            "client_assertion": assertion,
        }
        if self.source_config.scope:
            data["scope"] = self.source_config.scope
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        return data, headers

    async def _post_token_request(self, data: Dict[str, str], headers: Dict[str, str]) -> Dict[str, Any]:
        """POST to the token endpoint"""
        logger.debug("Fetching new source EHR access token")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.source_config.token_url,
                    data=data,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.source_config.timeout_seconds),
                ) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise SourceUnavailable(
                            f"Token request failed ({response.status}): {text[:200]}",
                            transient=response.status >= 500,
                        )
                    return await response.json()
        except asyncio.TimeoutError:
            raise SourceUnavailable("Token request timed out")
        except aiohttp.ClientError as e:
            raise SourceUnavailable(f"Token request error: {e}")

    # =========================================================================
    # Error Translation
    # =========================================================================

    @contextmanager
    def _translate_errors(self, what: str):
        """Map FHIR client failures onto the export error taxonomy"""
        try:
            yield
        except ExportError:
            raise
        except FHIRAuthenticationError as e:
            raise SourceAuthExpired(f"{what}: access token rejected") from e
        except FHIRNotFoundError as e:
            raise SourceNotFound(f"{what} not found") from e
        except FHIRParseError as e:
            raise MalformedContent(f"{what}: {e}") from e
        except FHIRError as e:
            raise SourceUnavailable(f"{what}: {e}", transient=e.transient) from e

    # =========================================================================
    # Source Operations
    # =========================================================================

    async def fetch_document(
        self,
        tenant_id: str,
        source_document_id: str,
        expected_patient_id: Optional[str] = None,
    ) -> FetchedDocument:
        """
        Fetch a DocumentReference and its content.

        Args:
            tenant_id: Tenant the document belongs to
            source_document_id: Source DocumentReference id
            expected_patient_id: When given, the document subject must match

        Returns:
            FetchedDocument with decoded bytes

        Raises:
            SourceNotFound, SourceUnavailable, SourceAuthExpired, MalformedContent
        """
        return await self.retry_policy.call(
            self._fetch_document_once, tenant_id, source_document_id, expected_patient_id
        )

    async def _fetch_document_once(
        self,
        tenant_id: str,
        source_document_id: str,
        expected_patient_id: Optional[str],
    ) -> FetchedDocument:
        what = f"DocumentReference/{source_document_id}"
        with self._translate_errors(what):
            document = await self.read(FHIRResourceType.DOCUMENT_REFERENCE, source_document_id)
        if document is None:
            raise SourceNotFound(f"{what} not found")

        if expected_patient_id and document.patient_id and document.patient_id != expected_patient_id:
            raise MalformedContent(
                f"{what} belongs to Patient/{document.patient_id}, expected Patient/{expected_patient_id}"
            )

        attachment = document.primary_attachment
        if attachment is None:
            raise MalformedContent(f"{what} has no content attachment")

        if attachment.data:
            try:
                content = base64.b64decode(attachment.data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedContent(f"{what} attachment is not valid base64: {e}")
            content_type = attachment.content_type or "application/octet-stream"
        elif attachment.binary_id:
            binary_what = f"Binary/{attachment.binary_id}"
            with self._translate_errors(binary_what):
                binary = await self.read_binary(attachment.binary_id)
            if binary is None:
                raise SourceNotFound(f"{binary_what} not found")
            content, binary_content_type = binary
            content_type = binary_content_type or attachment.content_type or "application/octet-stream"
        else:
            raise MalformedContent(f"{what} attachment has neither data nor a Binary url")

        if not content:
            raise MalformedContent(f"{what} content is empty")

        logger.info(f"[{tenant_id}] Fetched {what} ({len(content)} bytes, {content_type})")
        return FetchedDocument(metadata=document, content=content, content_type=content_type)

    async def fetch_patient(self, tenant_id: str, source_patient_id: str) -> FHIRPatient:
        """Fetch the source Patient (demographics for the destination copy)"""

        async def _once() -> FHIRPatient:
            what = f"Patient/{source_patient_id}"
            with self._translate_errors(what):
                patient = await self.read(FHIRResourceType.PATIENT, source_patient_id)
            if patient is None:
                raise SourceNotFound(f"{what} not found")
            return patient

        return await self.retry_policy.call(_once)

    async def search_discharge_documents(
        self,
        tenant_id: str,
        source_patient_id: str,
        max_results: Optional[int] = None,
    ) -> List[FHIRDocumentReference]:
        """Search discharge-summary DocumentReferences for a patient"""
        params = {"patient": source_patient_id, "_count": self.source_config.sweep_page_size}
        if self.source_config.discharge_document_type:
            params["type"] = self.source_config.discharge_document_type

        async def _once() -> List[FHIRDocumentReference]:
            with self._translate_errors(f"DocumentReference?patient={source_patient_id}"):
                return await self.search(FHIRResourceType.DOCUMENT_REFERENCE, params, max_results=max_results)

        documents = await self.retry_policy.call(_once)
        logger.info(f"[{tenant_id}] Found {len(documents)} discharge documents for Patient/{source_patient_id}")
        return documents


__all__ = [
    "SourceAuthMode",
    "SourceEHRConfig",
    "SourceToken",
    "FetchedDocument",
    "SourceEHRClient",
]
