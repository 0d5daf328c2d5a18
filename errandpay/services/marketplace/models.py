"""Marketplace database models.

One store holds trips, delivery requests and payments so that a capacity
reservation and the request transition it belongs to commit together. Refunds
and payouts are secondary `payments` rows pointing at the originating charge.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from errandpay.common.db import Base
from errandpay.common.events import utcnow
from errandpay.common.state_machine import PaymentStatus, PaymentType, RequestStatus, TripStatus


JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


class Trip(Base):
    """A traveler's announced errand with a fixed number of carrying slots."""

    __tablename__ = "trips"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_trips_capacity_positive"),
        CheckConstraint(
            "available_capacity >= 0 AND available_capacity <= capacity",
            name="ck_trips_available_capacity_bounds",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    traveler_id: Mapped[str] = mapped_column(String, index=True)
    destination: Mapped[str] = mapped_column(String)
    departure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    capacity: Mapped[int] = mapped_column(Integer)
    available_capacity: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, index=True, default=TripStatus.ANNOUNCED.value)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=func.now()
    )


class DeliveryRequest(Base):
    """A requester's ask attached to one trip."""

    __tablename__ = "delivery_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    trip_id: Mapped[str] = mapped_column(ForeignKey("trips.id"), index=True)
    requester_id: Mapped[str] = mapped_column(String, index=True)
    items: Mapped[list] = mapped_column(JsonType)
    max_item_budget_cents: Mapped[int] = mapped_column(Integer)
    delivery_fee_cents: Mapped[int] = mapped_column(Integer)
    tip_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Weak reference: looked up through the escrow service, never joined.
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, index=True, default=RequestStatus.PENDING.value)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=func.now()
    )


class Payment(Base):
    """Charge, refund or payout row owned by the escrow engine."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "refunded_amount_cents <= captured_amount_cents AND captured_amount_cents <= amount_cents",
            name="ck_payments_amount_bounds",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    request_id: Mapped[str] = mapped_column(String, index=True)
    parent_payment_id: Mapped[str | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, default=PaymentType.CHARGE.value)
    provider_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    captured_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    refunded_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True, default=PaymentStatus.PENDING.value)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=func.now()
    )


class PaymentTimeline(Base):
    """Immutable audit trail of every payment state transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Status events waiting to be handed to the publisher."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
