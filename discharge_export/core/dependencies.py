"""
Service wiring for the export pipeline.

Builds every pipeline component from settings, with explicit constructor
injection of clients, stores and retry policies, and exposes the assembled
set to FastAPI routes through ``get_export_services``.
"""

from dataclasses import dataclass
from typing import Optional

from discharge_export.core.config import Settings, settings
from discharge_export.core.errors import (
    DestinationWriteFailed,
    PatientResolutionFailed,
    PublishUnavailable,
    SourceUnavailable,
)
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy
from discharge_export.integrations.fhir import FHIRClient, FHIRClientConfig, SourceEHRClient, SourceEHRConfig
from discharge_export.services.destination_writer import DestinationFHIRWriter
from discharge_export.services.document_retrieval import DocumentRetrievalService
from discharge_export.services.duplicate_detector import DuplicateDetector
from discharge_export.services.event_publisher import EventPublisher, RedisEventPublisher
from discharge_export.services.export_orchestrator import ExportOrchestrator
from discharge_export.services.export_runner import ExportRunner
from discharge_export.services.patient_identity import PatientIdentityResolver
from discharge_export.services.patient_mapping_store import PatientMappingStore, RedisPatientMappingStore
from fastapi import Request

logger = get_logger(__name__)


@dataclass
class ExportServices:
    """Assembled pipeline and the resources it owns"""

    source_client: SourceEHRClient
    destination_client: FHIRClient
    mapping_store: PatientMappingStore
    publisher: EventPublisher
    orchestrator: ExportOrchestrator
    runner: ExportRunner
    retrieval: DocumentRetrievalService

    async def start(self) -> None:
        await self.source_client.initialize()
        await self.destination_client.initialize()
        for resource in (self.mapping_store, self.publisher):
            connect = getattr(resource, "connect", None)
            if connect is not None:
                await connect()

    async def stop(self) -> None:
        self.runner.shutdown()
        for resource in (self.mapping_store, self.publisher):
            disconnect = getattr(resource, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        await self.source_client.close()
        await self.destination_client.close()


def _policy(config: Settings, *retry_on) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        base_delay_seconds=config.RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds=config.RETRY_MAX_DELAY_SECONDS,
        retry_on=tuple(retry_on),
    )


def build_export_services(
    config: Optional[Settings] = None,
    source_client: Optional[SourceEHRClient] = None,
    destination_client: Optional[FHIRClient] = None,
    mapping_store: Optional[PatientMappingStore] = None,
    publisher: Optional[EventPublisher] = None,
) -> ExportServices:
    """Assemble the pipeline; any collaborator may be supplied pre-built"""
    if config is None:
        config = settings
    destination_policy = _policy(config, DestinationWriteFailed)

    if source_client is None:
        source_client = SourceEHRClient(
            SourceEHRConfig.from_settings(config),
            retry_policy=_policy(config, SourceUnavailable),
        )
    if destination_client is None:
        destination_client = FHIRClient(
            FHIRClientConfig(
                base_url=config.DESTINATION_FHIR_BASE_URL,
                timeout_seconds=config.FHIR_TIMEOUT_SECONDS,
                access_token=config.DESTINATION_ACCESS_TOKEN,
            )
        )
    if mapping_store is None:
        mapping_store = RedisPatientMappingStore(
            key_prefix=config.PATIENT_MAPPING_KEY_PREFIX,
            commit_key_prefix=config.EXPORT_COMMIT_KEY_PREFIX,
        )
    if publisher is None:
        publisher = RedisEventPublisher(
            channel=config.EXPORT_EVENTS_CHANNEL,
            timeout_seconds=config.PUBLISH_TIMEOUT_SECONDS,
            retry_policy=_policy(config, PublishUnavailable),
        )

    resolver = PatientIdentityResolver(
        source_client=source_client,
        destination_client=destination_client,
        mapping_store=mapping_store,
        destination_policy=destination_policy,
        store_policy=_policy(config, PatientResolutionFailed),
        identifier_system=config.SOURCE_PATIENT_IDENTIFIER_SYSTEM,
        tag_system=config.FHIR_TAG_SYSTEM,
        vendor=config.SOURCE_VENDOR,
    )
    detector = DuplicateDetector(
        destination_client,
        commit_store=mapping_store,
        retry_policy=destination_policy,
        fingerprint_system=config.EXPORT_FINGERPRINT_SYSTEM,
    )
    writer = DestinationFHIRWriter(
        destination_client,
        retry_policy=destination_policy,
        tag_system=config.FHIR_TAG_SYSTEM,
        source_document_identifier_system=config.SOURCE_DOCUMENT_IDENTIFIER_SYSTEM,
        fingerprint_system=config.EXPORT_FINGERPRINT_SYSTEM,
        vendor=config.SOURCE_VENDOR,
    )
    orchestrator = ExportOrchestrator(
        source_client=source_client,
        identity_resolver=resolver,
        duplicate_detector=detector,
        writer=writer,
        publisher=publisher,
        commit_store=mapping_store,
        commit_policy=destination_policy,
        vendor=config.SOURCE_VENDOR,
    )

    return ExportServices(
        source_client=source_client,
        destination_client=destination_client,
        mapping_store=mapping_store,
        publisher=publisher,
        orchestrator=orchestrator,
        runner=ExportRunner(orchestrator, source_client, max_concurrency=config.EXPORT_MAX_CONCURRENCY),
        retrieval=DocumentRetrievalService(destination_client, retry_policy=destination_policy),
    )


def get_export_services(request: Request) -> ExportServices:
    """FastAPI dependency: the services assembled at startup"""
    return request.app.state.export_services
