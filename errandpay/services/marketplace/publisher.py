"""Relay from the outbox table to the status-events Kafka topic."""

import asyncio

from errandpay.common.events import EventEnvelope, KafkaBus
from errandpay.common.logging import logger
from errandpay.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from errandpay.services.marketplace.models import OutboxEvent


class StatusEventRelay:
    """Publishes committed status changes; a failed publish never undoes a transition."""

    def __init__(self, session_factory, bus: KafkaBus | None = None, service_name: str = "status-relay") -> None:
        self.session_factory = session_factory
        self.kafka = bus or KafkaBus()
        self.service_name = service_name

    async def publish_batch(self, limit: int = 100) -> int:
        """Claim and publish one batch; return how many rows were delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("outbox publish failed outbox_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    db.commit()
        return sent

    async def outbox_publisher(self, poll_interval_seconds: float = 0.5) -> None:
        """Continuously publish pending status events."""

        while True:
            await self.publish_batch()
            await asyncio.sleep(poll_interval_seconds)

    async def close(self) -> None:
        await self.kafka.close()
