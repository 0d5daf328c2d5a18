"""Transactional outbox for status events.

Services call `enqueue_status_change` inside the same session that applies a
transition, so the event exists exactly when the transition committed. The
relay later claims rows, publishes them and marks them sent; a failed publish
only requeues the row.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from errandpay.common.config import settings
from errandpay.common.events import StatusChange, status_envelope
from errandpay.common.logging import trace_id_ctx
from errandpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_status_change(
    db,
    outbox_model,
    entity_type: str,
    entity_id: str,
    from_status: str | None,
    to_status: str,
):
    """Add one status-change envelope to the caller's transaction."""

    change = StatusChange(
        entity_type=entity_type,
        entity_id=entity_id,
        from_status=_plain(from_status),
        to_status=_plain(to_status),
    )
    envelope = status_envelope(change, trace_id=trace_id_ctx.get())
    row = outbox_model(
        aggregate_type=entity_type,
        aggregate_id=entity_id,
        event_type=envelope.event_type,
        topic=settings.status_events_topic,
        payload=envelope.model_dump(),
    )
    db.add(row)
    return row


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


def _plain(status) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", status)
