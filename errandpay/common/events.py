"""Status event envelope + Kafka producer used by the outbox relay.

Every accepted trip, request or payment transition becomes one
`status.changed` envelope whose payload is the
`{entity_type, entity_id, from_status, to_status, timestamp}` record consumed by
the real-time/notification side of the platform.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from errandpay.common.config import settings


STATUS_CHANGED = "status.changed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: utcnow().isoformat())
    trace_id: str = ""
    payload: dict[str, Any]


class StatusChange(BaseModel):
    """Record emitted for one accepted status transition."""

    entity_type: str
    entity_id: str
    from_status: str | None
    to_status: str
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


def status_envelope(change: StatusChange, trace_id: str = "") -> EventEnvelope:
    return EventEnvelope(
        event_type=STATUS_CHANGED,
        aggregate_id=change.entity_id,
        occurred_at=change.timestamp,
        trace_id=trace_id,
        payload=change.model_dump(),
    )


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
