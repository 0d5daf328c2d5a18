"""API request/response schemas for delivery-request endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RequestItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    estimated_price_cents: int = Field(ge=0)
    actual_price_cents: int | None = Field(default=None, ge=0)


class DeliveryRequestCreate(BaseModel):
    """Payload for attaching a new request to a trip."""

    trip_id: str = Field(min_length=1)
    requester_id: str = Field(min_length=1)
    items: list[RequestItem] = Field(min_length=1)
    max_item_budget_cents: int = Field(ge=0)
    delivery_fee_cents: int = Field(ge=0)
    tip_cents: int = Field(default=0, ge=0)


class AuthorizePaymentBody(BaseModel):
    payer_ref: str = Field(min_length=1)


class PurchaseBody(BaseModel):
    capture_amount_cents: int | None = Field(default=None, gt=0)
    # Unit prices paid, one per item in request order.
    actual_item_prices_cents: list[int] | None = None


class PayoutBody(BaseModel):
    recipient_account_ref: str | None = None


class CancelBody(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DeliveryRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    requester_id: str
    items: list[RequestItem]
    max_item_budget_cents: int
    delivery_fee_cents: int
    tip_cents: int
    payment_id: str | None = None
    status: str
    cancel_reason: str | None = None
    accepted_at: datetime | None = None
    purchased_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None


class CostBreakdown(BaseModel):
    """What the requester is charged for one request, in minor units."""

    items_cents: int
    delivery_fee_cents: int
    tip_cents: int
    total_cents: int
    actual_prices: bool = False
