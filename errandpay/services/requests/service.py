"""Delivery-request lifecycle.

PENDING -> ACCEPTED -> PURCHASED -> DELIVERED, with CANCELLED reachable from
the first three. Acceptance reserves one unit of trip capacity in the same
transaction as the status write; cancellation of a reserved request releases
it. Money moves through the escrow engine: authorization after acceptance,
capture on purchase, payout after delivery, refund on cancellation.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update

from errandpay.common.logging import entity_id_ctx, logger
from errandpay.common.metrics import invalid_transitions_total, request_transitions_total
from errandpay.common.outbox import enqueue_status_change
from errandpay.common.results import (
    CapacityExhausted,
    ConcurrencyConflict,
    Ok,
    ValidationError,
    invalid_transition,
    not_found,
)
from errandpay.common.state_machine import (
    CAPACITY_HOLDING_STATUSES,
    REQUEST_TRANSITIONS,
    PaymentStatus,
    PaymentType,
    RequestStatus,
    TripStatus,
    is_allowed,
)
from errandpay.services.capacity.service import release, reserve
from errandpay.services.escrow.provider import idempotency_key
from errandpay.services.escrow.service import EscrowService
from errandpay.services.marketplace.models import DeliveryRequest, OutboxEvent, Payment, Trip
from errandpay.services.marketplace.transitions import guarded_transition
from errandpay.services.requests.schemas import CostBreakdown


# Payment statuses in which funds are still held and can simply be voided.
VOIDABLE_PAYMENT_STATUSES = {PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value}
CAPTURED_PAYMENT_STATUSES = {
    PaymentStatus.CAPTURED.value,
    PaymentStatus.TRANSFERRED.value,
    PaymentStatus.REFUNDED.value,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_total_cost(request: DeliveryRequest) -> CostBreakdown:
    """Items (capped by the item budget) + fee + tip.

    Once every item carries the price actually paid, those prices replace
    the estimates.
    """

    actual = all(item.get("actual_price_cents") is not None for item in request.items)
    price_field = "actual_price_cents" if actual else "estimated_price_cents"
    items_cents = sum(int(item["quantity"]) * int(item[price_field]) for item in request.items)
    items_cents = min(items_cents, request.max_item_budget_cents)
    tip_cents = request.tip_cents or 0
    return CostBreakdown(
        items_cents=items_cents,
        delivery_fee_cents=request.delivery_fee_cents,
        tip_cents=tip_cents,
        total_cents=items_cents + request.delivery_fee_cents + tip_cents,
        actual_prices=actual,
    )


class RequestLifecycleService:
    """Enforces the request state machine and couples it to capacity and escrow."""

    def __init__(self, session_factory, escrow: EscrowService, service_name: str = "requests") -> None:
        self.session_factory = session_factory
        self.escrow = escrow
        self.service_name = service_name

    # ------------------------------------------------------------------ reads

    def get_request(self, request_id: str):
        with self.session_factory() as db:
            request = db.get(DeliveryRequest, request_id)
            if request is None:
                return not_found("delivery_request", request_id)
            return Ok(request)

    def list_pending_for_trip(self, trip_id: str, limit: int = 10):
        """Pending requests for a trip, best-paying first, then oldest first."""

        with self.session_factory() as db:
            if db.get(Trip, trip_id) is None:
                return not_found("trip", trip_id)
            pending = list(
                db.execute(
                    select(DeliveryRequest)
                    .where(
                        DeliveryRequest.trip_id == trip_id,
                        DeliveryRequest.status == RequestStatus.PENDING.value,
                    )
                    .order_by(DeliveryRequest.delivery_fee_cents.desc(), DeliveryRequest.created_at.asc())
                    .limit(limit)
                ).scalars()
            )
            return Ok(pending)

    def cost(self, request_id: str):
        loaded = self.get_request(request_id)
        if not loaded.ok:
            return loaded
        return Ok(calculate_total_cost(loaded.value))

    # ------------------------------------------------------------ internals

    def _reject(self, request: DeliveryRequest, target: RequestStatus):
        invalid_transitions_total.labels(service=self.service_name, entity_type="delivery_request").inc()
        logger.warning(
            "invalid request transition request_id=%s from=%s to=%s",
            request.id,
            request.status,
            target.value,
        )
        return invalid_transition("delivery_request", request.id, request.status, target.value)

    def _load(self, request_id: str):
        with self.session_factory() as db:
            request = db.get(DeliveryRequest, request_id)
        if request is None:
            return not_found("delivery_request", request_id)
        entity_id_ctx.set(request.id)
        return Ok(request)

    def _move(self, db, request: DeliveryRequest, target: RequestStatus, **values) -> str | None:
        """Guarded status write; returns the status moved from, or None if it no longer applies."""

        from_status = request.status
        if not is_allowed(REQUEST_TRANSITIONS, from_status, target):
            return None
        if not guarded_transition(db, DeliveryRequest, request, target, check_version=False, **values):
            return None
        return from_status

    def _committed(self, request: DeliveryRequest, from_status: str, target: RequestStatus) -> None:
        request_transitions_total.labels(
            service=self.service_name,
            from_status=from_status,
            to_status=target.value,
        ).inc()
        logger.info("request_transition request_id=%s from=%s to=%s", request.id, from_status, target.value)

    def _lost_race(self, db, request_id: str, target: RequestStatus):
        """Report a guarded write that matched nothing as the status we lost to."""

        db.rollback()
        current = db.get(DeliveryRequest, request_id)
        return self._reject(current, target)

    def _linked_payment(self, request: DeliveryRequest) -> Payment | None:
        if not request.payment_id:
            return None
        loaded = self.escrow.get_payment(request.payment_id)
        return loaded.value if loaded.ok else None

    # ----------------------------------------------------------- operations

    def create_request(
        self,
        trip_id: str,
        requester_id: str,
        items: list[dict],
        max_item_budget_cents: int,
        delivery_fee_cents: int,
        tip_cents: int = 0,
    ):
        """Attach a PENDING request to an announced trip.

        Capacity is only checked here, not taken; the reservation happens at
        acceptance.
        """

        if not requester_id:
            return ValidationError("requester_id is required")
        if not items:
            return ValidationError("at least one item is required")
        for item in items:
            if not item.get("name") or int(item.get("quantity", 0)) < 1 or int(item.get("estimated_price_cents", -1)) < 0:
                return ValidationError("every item needs a name, a positive quantity and a price", {"item": item})
        if min(max_item_budget_cents, delivery_fee_cents, tip_cents) < 0:
            return ValidationError("money amounts cannot be negative")

        with self.session_factory() as db:
            trip = db.get(Trip, trip_id)
            if trip is None:
                return not_found("trip", trip_id)
            if trip.status != TripStatus.ANNOUNCED.value:
                return ValidationError("trip is not accepting requests", {"trip_status": trip.status})
            if trip.available_capacity <= 0:
                logger.info("request rejected, trip full trip_id=%s", trip_id)
                return CapacityExhausted("trip has no capacity left", {"trip_id": trip_id, "available": 0})

            request = DeliveryRequest(
                trip_id=trip_id,
                requester_id=requester_id,
                items=[dict(item) for item in items],
                max_item_budget_cents=max_item_budget_cents,
                delivery_fee_cents=delivery_fee_cents,
                tip_cents=tip_cents,
                status=RequestStatus.PENDING.value,
                state_version=0,
            )
            db.add(request)
            db.flush()
            enqueue_status_change(db, OutboxEvent, "delivery_request", request.id, None, RequestStatus.PENDING)
            db.commit()
            logger.info("request_created request_id=%s trip_id=%s", request.id, trip_id)
            return Ok(request)

    def accept(self, request_id: str):
        """PENDING -> ACCEPTED, reserving one unit of the trip's capacity.

        Both writes share one transaction. When the trip is full the status
        write is rolled back with it and `CapacityExhausted` is returned.
        """

        with self.session_factory() as db:
            request = db.get(DeliveryRequest, request_id)
            if request is None:
                return not_found("delivery_request", request_id)
            entity_id_ctx.set(request.id)
            if not is_allowed(REQUEST_TRANSITIONS, request.status, RequestStatus.ACCEPTED):
                return self._reject(request, RequestStatus.ACCEPTED)

            trip_id = request.trip_id
            from_status = self._move(db, request, RequestStatus.ACCEPTED, accepted_at=_now())
            if from_status is None:
                return self._lost_race(db, request_id, RequestStatus.ACCEPTED)
            reservation = reserve(db, trip_id, 1)
            if not reservation.ok:
                db.rollback()
                logger.info("accept refused request_id=%s reason=%s", request_id, reservation.code)
                return reservation
            db.commit()
            self._committed(request, from_status, RequestStatus.ACCEPTED)
            return Ok(request)

    def authorize_payment(self, request_id: str, payer_ref: str):
        """Hold the request's total cost with the escrow engine.

        Idempotent while a live payment is linked; after a failed or voided
        payment a new attempt gets a new idempotency key.
        """

        loaded = self._load(request_id)
        if not loaded.ok:
            return loaded
        request = loaded.value
        if request.status != RequestStatus.ACCEPTED.value:
            return ValidationError(
                "payment can only be authorized for an accepted request", {"status": request.status}
            )
        existing = self._linked_payment(request)
        if existing is not None and existing.status not in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value):
            return Ok(existing)

        attempt = 1 + sum(1 for row in self.escrow.list_payments(request.id) if row.type == PaymentType.CHARGE.value)
        cost = calculate_total_cost(request)
        # Declined attempts leave no row, so the payer is part of the key.
        key = idempotency_key("authorize", request.id, attempt, cost.total_cents, payer_ref)
        outcome = self.escrow.authorize(
            request.id,
            cost.total_cents,
            payer_ref,
            description=f"Delivery request {request.id}",
            idempotency_key_override=key,
        )
        if not outcome.ok:
            return outcome
        payment = outcome.value

        with self.session_factory() as db:
            linked = db.execute(
                update(DeliveryRequest)
                .where(
                    DeliveryRequest.id == request.id,
                    DeliveryRequest.status == RequestStatus.ACCEPTED.value,
                )
                .values(payment_id=payment.id, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if linked.rowcount != 1:
            # The request left ACCEPTED while we were authorizing; release the hold.
            logger.warning("request changed during authorization request_id=%s payment_id=%s", request.id, payment.id)
            self.escrow.cancel_authorization(payment.id, reason="request_no_longer_accepted")
            return self._load_and_reject(request.id, RequestStatus.ACCEPTED)
        return Ok(payment)

    def mark_purchased(
        self,
        request_id: str,
        capture_amount_cents: int | None = None,
        actual_item_prices_cents: list[int] | None = None,
    ):
        """ACCEPTED -> PURCHASED, capturing the held payment first.

        `actual_item_prices_cents` records the unit price paid for each item,
        in item order. Without an explicit capture amount the capture then
        follows the actual total instead of the authorized one.

        If the capture raises, the request stays ACCEPTED.
        """

        loaded = self._load(request_id)
        if not loaded.ok:
            return loaded
        request = loaded.value
        if not is_allowed(REQUEST_TRANSITIONS, request.status, RequestStatus.PURCHASED):
            return self._reject(request, RequestStatus.PURCHASED)

        purchase_values = {"purchased_at": _now()}
        if actual_item_prices_cents is not None:
            if len(actual_item_prices_cents) != len(request.items) or any(
                int(price) < 0 for price in actual_item_prices_cents
            ):
                return ValidationError(
                    "one non-negative actual price is needed per item", {"item_count": len(request.items)}
                )
            request.items = [
                dict(item, actual_price_cents=int(price)) for item, price in zip(request.items, actual_item_prices_cents)
            ]
            purchase_values["items"] = request.items
            if capture_amount_cents is None:
                capture_amount_cents = calculate_total_cost(request).total_cents

        payment = self._linked_payment(request)
        if payment is not None:
            if payment.status == PaymentStatus.AUTHORIZED.value:
                captured = self.escrow.capture(payment.id, capture_amount_cents)
                if not captured.ok:
                    return captured
            elif payment.status not in CAPTURED_PAYMENT_STATUSES:
                return ValidationError(
                    "linked payment cannot be captured", {"payment_id": payment.id, "payment_status": payment.status}
                )

        with self.session_factory() as db:
            current = db.get(DeliveryRequest, request_id)
            from_status = self._move(db, current, RequestStatus.PURCHASED, **purchase_values)
            if from_status is None:
                return self._lost_race(db, request_id, RequestStatus.PURCHASED)
            db.commit()
            self._committed(current, from_status, RequestStatus.PURCHASED)
            return Ok(current)

    def deliver(self, request_id: str):
        """PURCHASED -> DELIVERED. Capacity stays consumed until the trip ends."""

        with self.session_factory() as db:
            request = db.get(DeliveryRequest, request_id)
            if request is None:
                return not_found("delivery_request", request_id)
            entity_id_ctx.set(request.id)
            if not is_allowed(REQUEST_TRANSITIONS, request.status, RequestStatus.DELIVERED):
                return self._reject(request, RequestStatus.DELIVERED)
            from_status = self._move(db, request, RequestStatus.DELIVERED, delivered_at=_now())
            if from_status is None:
                return self._lost_race(db, request_id, RequestStatus.DELIVERED)
            db.commit()
            self._committed(request, from_status, RequestStatus.DELIVERED)
            return Ok(request)

    def payout(self, request_id: str, recipient_account_ref: str | None):
        """Transfer the captured funds of a delivered request to the traveler."""

        loaded = self._load(request_id)
        if not loaded.ok:
            return loaded
        request = loaded.value
        if request.status != RequestStatus.DELIVERED.value:
            return ValidationError("payout requires a delivered request", {"status": request.status})
        if not request.payment_id:
            return ValidationError("request has no payment to pay out")
        return self.escrow.transfer_to_recipient(request.payment_id, recipient_account_ref)

    def cancel(self, request_id: str, reason: str | None = None):
        """Cancel from PENDING, ACCEPTED or PURCHASED.

        Captured money is refunded (once, for whatever is still refundable)
        before the request is marked CANCELLED; a held authorization is voided.
        A failing refund propagates and leaves the request as it was. The
        status write and the capacity release commit together.
        """

        loaded = self._load(request_id)
        if not loaded.ok:
            return loaded
        request = loaded.value
        if not is_allowed(REQUEST_TRANSITIONS, request.status, RequestStatus.CANCELLED):
            return self._reject(request, RequestStatus.CANCELLED)

        payment = self._linked_payment(request)
        if payment is not None:
            settled = self._settle_payment_for_cancellation(payment, reason)
            if not settled.ok:
                return settled

        with self.session_factory() as db:
            current = db.get(DeliveryRequest, request_id)
            from_status = self._move(db, current, RequestStatus.CANCELLED, cancelled_at=_now(), cancel_reason=reason)
            if from_status is None:
                return self._lost_race(db, request_id, RequestStatus.CANCELLED)
            if RequestStatus(from_status) in CAPACITY_HOLDING_STATUSES:
                released = release(db, current.trip_id, 1)
                if not released.ok:
                    db.rollback()
                    raise ConcurrencyConflict(f"trip {current.trip_id} vanished while cancelling {request_id}")
            db.commit()
            self._committed(current, from_status, RequestStatus.CANCELLED)
            return Ok(current)

    def _settle_payment_for_cancellation(self, payment: Payment, reason: str | None):
        if payment.status in VOIDABLE_PAYMENT_STATUSES:
            return self.escrow.cancel_authorization(payment.id, reason=reason or "request_cancelled")
        if payment.status in CAPTURED_PAYMENT_STATUSES:
            if payment.refunded_amount_cents >= payment.captured_amount_cents:
                return Ok(payment)
            return self.escrow.refund(payment.id, None, reason=reason or "request_cancelled")
        # FAILED / CANCELLED payments hold no money.
        return Ok(payment)

    def _load_and_reject(self, request_id: str, target: RequestStatus):
        with self.session_factory() as db:
            current = db.get(DeliveryRequest, request_id)
        return self._reject(current, target)
