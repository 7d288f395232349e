"""Event envelope and Kafka producer used as the notification sink.

State changes write envelopes to the outbox in the same transaction; the
relay later hands them to a `NotificationSink`. Delivery is at-least-once,
so consumers dedupe on `event_id`.
"""

import json
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from shopcore.common.config import settings


class EventEnvelope(BaseModel):
    """Canonical event shape handed to downstream consumers."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    payload: dict[str, Any]


class NotificationSink(Protocol):
    """Fire-and-forget consumer of normalized events."""

    async def publish(self, topic: str, event: EventEnvelope) -> None: ...

    async def close(self) -> None: ...


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox relay."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None
