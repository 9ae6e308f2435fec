"""
Document retrieval from the destination store.

Resolves an exported DocumentReference, or a Composition through its first
DocumentReference section entry, to the Binary content it points at.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

from discharge_export.core.errors import DestinationWriteFailed, DocumentNotFound, MalformedContent
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.integrations.fhir import FHIRClient, FHIRParseError, FHIRResourceType
from discharge_export.services.destination_writer import translate_destination_errors

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetrievedBinary:
    document_reference_id: str
    binary_id: Optional[str]
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class DocumentRetrievalService:
    def __init__(self, client: FHIRClient, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy or default_retry_policy(DestinationWriteFailed)

    async def get_binary(
        self,
        document_reference_id: Optional[str] = None,
        composition_id: Optional[str] = None,
    ) -> RetrievedBinary:
        """
        Fetch the content behind a DocumentReference or Composition.

        Raises:
            ValueError: neither id given
            DocumentNotFound: a resource in the chain does not exist
            MalformedContent: the chain is broken or the content undecodable
        """
        if not document_reference_id and not composition_id:
            raise ValueError("document_reference_id or composition_id is required")

        if not document_reference_id:
            composition = await self._read(FHIRResourceType.COMPOSITION, composition_id)
            document_reference_id = composition.document_reference_id
            if not document_reference_id:
                raise MalformedContent(f"Composition/{composition_id} has no DocumentReference entry")

        document = await self._read(FHIRResourceType.DOCUMENT_REFERENCE, document_reference_id)
        attachment = document.primary_attachment
        if attachment is None:
            raise MalformedContent(f"DocumentReference/{document_reference_id} has no attachment")

        if attachment.data:
            try:
                content = base64.b64decode(attachment.data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedContent(f"DocumentReference/{document_reference_id} attachment: {e}")
            return RetrievedBinary(
                document_reference_id=document_reference_id,
                binary_id=None,
                content_type=attachment.content_type or "application/octet-stream",
                content=content,
            )

        binary_id = attachment.binary_id
        if not binary_id:
            raise MalformedContent(f"DocumentReference/{document_reference_id} attachment has no Binary url")

        content, binary_content_type = await self._read(FHIRResourceType.BINARY, binary_id)

        logger.debug("document_retrieved", document_reference_id=document_reference_id, binary_id=binary_id)
        return RetrievedBinary(
            document_reference_id=document_reference_id,
            binary_id=binary_id,
            content_type=binary_content_type or attachment.content_type or "application/octet-stream",
            content=content,
        )

    async def _read(self, resource_type: FHIRResourceType, resource_id: str):
        what = f"{resource_type.value}/{resource_id}"

        async def _once():
            try:
                with translate_destination_errors(f"{what} read"):
                    if resource_type == FHIRResourceType.BINARY:
                        return await self.client.read_binary(resource_id)
                    return await self.client.read(resource_type, resource_id)
            except DestinationWriteFailed as e:
                if isinstance(e.__cause__, FHIRParseError):
                    raise MalformedContent(f"{what}: {e.__cause__}") from e
                raise

        resource = await self.retry_policy.call(_once)
        if resource is None:
            raise DocumentNotFound(f"{what} not found")
        return resource
