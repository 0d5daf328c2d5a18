"""API request/response schemas for payment endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CaptureRequest(BaseModel):
    amount_cents: int | None = Field(default=None, gt=0)


class RefundRequest(BaseModel):
    """Omit `amount_cents` to refund everything still refundable."""

    amount_cents: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class PaymentResponse(BaseModel):
    """Payment row as exposed to clients and operators."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    parent_payment_id: str | None = None
    type: str
    provider_intent_id: str | None = None
    amount_cents: int
    captured_amount_cents: int
    refunded_amount_cents: int
    currency: str
    status: str
    failure_reason: str | None = None
    captured_at: datetime | None = None
    transferred_at: datetime | None = None
    refunded_at: datetime | None = None


class TimelineEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str | None = None
    to_state: str
    reason: str
    event_id: str | None = None
    created_at: datetime
