"""add hot-path indexes for pending-request listing and outbox claims

Revision ID: 0002_marketplace_hot_path_indexes
Revises: 0001_marketplace
Create Date: 2026-10-17
"""

from alembic import op


revision = "0002_marketplace_hot_path_indexes"
down_revision = "0001_marketplace"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_delivery_requests_trip_status_fee",
        "delivery_requests",
        ["trip_id", "status", "delivery_fee_cents"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_delivery_requests_trip_status_fee", table_name="delivery_requests")
