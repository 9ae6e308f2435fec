"""
Patient mapping store.

Durable key-value store with compare-and-create semantics: the first writer
of a key wins and every later writer reads back the winner. It holds two
keyspaces:

- patient mappings, (tenant, source patient) -> destination patient. This is
  the uniqueness guard the patient identity resolver relies on when two jobs
  race on a new patient.
- export commit markers, export fingerprint -> destination DocumentReference
  id. The orchestrator claims the marker after a complete write; whoever
  claims it first owns the export and every other set is discarded.

Backends:
- RedisPatientMappingStore: SET NX on ``{prefix}:{tenant}:{source_patient}``
  and ``{commit_prefix}:{fingerprint}``
- InMemoryPatientMappingStore: process-local, for tests and single-node runs
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, Type

import redis.asyncio as redis
from discharge_export.core.config import settings
from discharge_export.core.errors import DestinationWriteFailed, ExportError, PatientResolutionFailed
from discharge_export.core.logging import get_logger
from discharge_export.models.export import PatientMapping
from redis.exceptions import RedisError

logger = get_logger(__name__)


class PatientMappingStore(ABC):
    """Interface for the mapping store"""

    @abstractmethod
    async def get(self, tenant_id: str, source_patient_id: str) -> Optional[PatientMapping]:
        """Return the stored mapping, or None"""

    @abstractmethod
    async def create_if_absent(self, mapping: PatientMapping) -> Tuple[PatientMapping, bool]:
        """
        Persist ``mapping`` unless one already exists for its key.

        Returns:
            (stored mapping, created) where ``created`` is False when another
            writer got there first and the returned mapping is theirs
        """

    @abstractmethod
    async def get_export_commit(self, fingerprint: str) -> Optional[str]:
        """DocumentReference id committed for the fingerprint, or None"""

    @abstractmethod
    async def claim_export_commit(self, fingerprint: str, document_reference_id: str) -> str:
        """
        Record ``document_reference_id`` as the export for ``fingerprint``
        unless another one is already recorded.

        Returns:
            The committed DocumentReference id (ours, or the earlier winner's)
        """


class RedisPatientMappingStore(PatientMappingStore):
    """Redis-backed mapping store"""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: Optional[str] = None,
        commit_key_prefix: Optional[str] = None,
    ):
        self.redis_client = redis_client
        self.key_prefix = key_prefix or settings.PATIENT_MAPPING_KEY_PREFIX
        self.commit_key_prefix = commit_key_prefix or settings.EXPORT_COMMIT_KEY_PREFIX

    async def connect(self):
        """Connect to Redis (call during app startup)."""
        if self.redis_client is not None:
            return
        self.redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        await self.redis_client.ping()
        logger.info("patient_mapping_store_connected", backend="redis")

    async def disconnect(self):
        """Disconnect from Redis (call during app shutdown)."""
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("patient_mapping_store_disconnected", backend="redis")

    def _key(self, tenant_id: str, source_patient_id: str) -> str:
        return f"{self.key_prefix}:{tenant_id}:{source_patient_id}"

    def _commit_key(self, fingerprint: str) -> str:
        return f"{self.commit_key_prefix}:{fingerprint}"

    def _client(self, error: Type[ExportError] = PatientResolutionFailed) -> redis.Redis:
        if self.redis_client is None:
            raise error("Patient mapping store is not connected", transient=True)
        return self.redis_client

    async def get(self, tenant_id: str, source_patient_id: str) -> Optional[PatientMapping]:
        try:
            raw = await self._client().get(self._key(tenant_id, source_patient_id))
        except (RedisError, asyncio.TimeoutError) as e:
            raise PatientResolutionFailed(f"Mapping lookup failed: {e}", transient=True) from e

        if raw is None:
            return None
        return PatientMapping.from_json(raw)

    async def create_if_absent(self, mapping: PatientMapping) -> Tuple[PatientMapping, bool]:
        key = self._key(mapping.tenant_id, mapping.source_patient_id)
        try:
            created = await self._client().set(key, mapping.to_json(), nx=True)
        except (RedisError, asyncio.TimeoutError) as e:
            raise PatientResolutionFailed(f"Mapping write failed: {e}", transient=True) from e

        if created:
            return mapping, True

        existing = await self.get(mapping.tenant_id, mapping.source_patient_id)
        if existing is None:
            # Key was removed between SET NX and GET; let the caller retry
            raise PatientResolutionFailed("Mapping conflict could not be read back", transient=True)
        return existing, False

    async def get_export_commit(self, fingerprint: str) -> Optional[str]:
        try:
            return await self._client(DestinationWriteFailed).get(self._commit_key(fingerprint))
        except (RedisError, asyncio.TimeoutError) as e:
            raise DestinationWriteFailed(f"Export commit lookup failed: {e}", transient=True) from e

    async def claim_export_commit(self, fingerprint: str, document_reference_id: str) -> str:
        key = self._commit_key(fingerprint)
        try:
            claimed = await self._client(DestinationWriteFailed).set(key, document_reference_id, nx=True)
        except (RedisError, asyncio.TimeoutError) as e:
            raise DestinationWriteFailed(f"Export commit failed: {e}", transient=True) from e

        if claimed:
            return document_reference_id

        committed = await self.get_export_commit(fingerprint)
        if committed is None:
            raise DestinationWriteFailed("Export commit conflict could not be read back", transient=True)
        return committed


class InMemoryPatientMappingStore(PatientMappingStore):
    """Process-local mapping store"""

    def __init__(self):
        self._mappings: Dict[Tuple[str, str], PatientMapping] = {}
        self._commits: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str, source_patient_id: str) -> Optional[PatientMapping]:
        return self._mappings.get((tenant_id, source_patient_id))

    async def create_if_absent(self, mapping: PatientMapping) -> Tuple[PatientMapping, bool]:
        key = (mapping.tenant_id, mapping.source_patient_id)
        async with self._lock:
            existing = self._mappings.get(key)
            if existing is not None:
                return existing, False
            self._mappings[key] = mapping
            return mapping, True

    async def get_export_commit(self, fingerprint: str) -> Optional[str]:
        return self._commits.get(fingerprint)

    async def claim_export_commit(self, fingerprint: str, document_reference_id: str) -> str:
        async with self._lock:
            return self._commits.setdefault(fingerprint, document_reference_id)
