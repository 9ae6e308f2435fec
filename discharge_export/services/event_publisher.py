"""
Event Publisher

Emits one DocumentExportEvent per terminal export for the simplification and
translation stage and for audit consumers.

Message format (JSON):

    {
        "eventType": "document.exported",
        "timestamp": "2024-01-01T00:00:00Z",
        "data": {...DocumentExportEvent...},
        "attributes": {"tenantId": ..., "documentReferenceId": ..., "status": ...}
    }

Consumers assume at-least-once delivery; a retried publish may repeat a message.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from discharge_export.core.config import settings
from discharge_export.core.errors import PublishUnavailable
from discharge_export.core.logging import get_logger
from discharge_export.core.resilience import RetryPolicy, default_retry_policy
from discharge_export.models.export import DocumentExportEvent
from redis.exceptions import RedisError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PublishAck:
    channel: str
    receivers: int


def serialize_event(event: DocumentExportEvent) -> str:
    message = event.to_message()
    message["attributes"] = event.attributes()
    return json.dumps(message)


class EventPublisher(ABC):
    """Swappable notification boundary"""

    @abstractmethod
    async def publish(self, event: DocumentExportEvent) -> PublishAck:
        """Publish one event or raise PublishUnavailable"""


class RedisEventPublisher(EventPublisher):
    """Redis pub/sub publisher"""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.redis_client = redis_client
        self.channel = channel or settings.EXPORT_EVENTS_CHANNEL
        self.timeout_seconds = timeout_seconds or settings.PUBLISH_TIMEOUT_SECONDS
        self.retry_policy = retry_policy or default_retry_policy(PublishUnavailable)

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
        logger.info("event_publisher_connected", channel=self.channel)

    async def disconnect(self):
        """Disconnect from Redis (call during app shutdown)."""
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None

    async def publish(self, event: DocumentExportEvent) -> PublishAck:
        payload = serialize_event(event)
        return await self.retry_policy.call(self._publish_once, payload, event)

    async def _publish_once(self, payload: str, event: DocumentExportEvent) -> PublishAck:
        if self.redis_client is None:
            raise PublishUnavailable("Event publisher is not connected")

        try:
            receivers = await asyncio.wait_for(
                self.redis_client.publish(self.channel, payload),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PublishUnavailable(f"Publish timed out after {self.timeout_seconds}s") from e
        except RedisError as e:
            raise PublishUnavailable(f"Publish failed: {e}") from e

        logger.debug(
            "export_event_published",
            channel=self.channel,
            document_reference_id=event.document_reference_id,
            status=event.status.value,
            receivers=receivers,
        )
        return PublishAck(channel=self.channel, receivers=int(receivers or 0))


class InMemoryEventPublisher(EventPublisher):
    """Collects published events; used in tests and dry runs"""

    def __init__(self, channel: str = "memory"):
        self.channel = channel
        self.events: List[DocumentExportEvent] = []
        self.messages: List[Dict[str, Any]] = []

    async def publish(self, event: DocumentExportEvent) -> PublishAck:
        self.events.append(event)
        self.messages.append(json.loads(serialize_event(event)))
        return PublishAck(channel=self.channel, receivers=1)
