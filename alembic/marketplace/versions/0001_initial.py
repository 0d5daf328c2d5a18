"""initial marketplace schema

Revision ID: 0001_marketplace
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_marketplace"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "trips",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("traveler_id", sa.String(), nullable=False),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("departure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("available_capacity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("capacity >= 1", name="ck_trips_capacity_positive"),
        sa.CheckConstraint(
            "available_capacity >= 0 AND available_capacity <= capacity",
            name="ck_trips_available_capacity_bounds",
        ),
    )
    op.create_index("ix_trips_traveler_id", "trips", ["traveler_id"])
    op.create_index("ix_trips_status", "trips", ["status"])

    op.create_table(
        "delivery_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("trip_id", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("items", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("max_item_budget_cents", sa.Integer(), nullable=False),
        sa.Column("delivery_fee_cents", sa.Integer(), nullable=False),
        sa.Column("tip_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["trip_id"], ["trips.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_delivery_requests_trip_id", "delivery_requests", ["trip_id"])
    op.create_index("ix_delivery_requests_requester_id", "delivery_requests", ["requester_id"])
    op.create_index("ix_delivery_requests_payment_id", "delivery_requests", ["payment_id"])
    op.create_index("ix_delivery_requests_status", "delivery_requests", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("parent_payment_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("provider_intent_id", sa.String(), nullable=True),
        sa.Column("provider_ref", sa.String(), nullable=True),
        sa.Column("payer_ref", sa.String(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("captured_amount_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("refunded_amount_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transferred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "refunded_amount_cents <= captured_amount_cents AND captured_amount_cents <= amount_cents",
            name="ck_payments_amount_bounds",
        ),
    )
    op.create_index("ix_payments_request_id", "payments", ["request_id"])
    op.create_index("ix_payments_parent_payment_id", "payments", ["parent_payment_id"])
    op.create_index("ix_payments_provider_intent_id", "payments", ["provider_intent_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_idempotency_key", "payments", ["idempotency_key"], unique=True)

    op.create_table(
        "payment_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_payment_timeline_payment_id", "payment_timeline", ["payment_id"])
    op.create_index("ix_payment_timeline_event_id", "payment_timeline", ["event_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_payment_timeline_event_id", table_name="payment_timeline")
    op.drop_index("ix_payment_timeline_payment_id", table_name="payment_timeline")
    op.drop_table("payment_timeline")
    op.drop_index("ix_payments_idempotency_key", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_provider_intent_id", table_name="payments")
    op.drop_index("ix_payments_parent_payment_id", table_name="payments")
    op.drop_index("ix_payments_request_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_delivery_requests_status", table_name="delivery_requests")
    op.drop_index("ix_delivery_requests_payment_id", table_name="delivery_requests")
    op.drop_index("ix_delivery_requests_requester_id", table_name="delivery_requests")
    op.drop_index("ix_delivery_requests_trip_id", table_name="delivery_requests")
    op.drop_table("delivery_requests")
    op.drop_index("ix_trips_status", table_name="trips")
    op.drop_index("ix_trips_traveler_id", table_name="trips")
    op.drop_table("trips")
