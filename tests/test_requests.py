"""Request lifecycle: the state machine and its coupling to capacity and escrow."""

import threading

import pytest
from sqlalchemy import select

from errandpay.common.results import CapacityExhausted, InvalidStatusTransition, NotFoundError, ValidationError
from errandpay.common.state_machine import PaymentStatus, PaymentType, RequestStatus, TripStatus
from errandpay.services.escrow.provider import ProviderDeclined, ProviderTimeout
from errandpay.services.marketplace.models import OutboxEvent


def _accepted_and_authorized(make_trip, make_request, lifecycle):
    trip = make_trip(capacity=2)
    request = make_request(trip.id)
    assert lifecycle.accept(request.id).ok
    payment = lifecycle.authorize_payment(request.id, "cus_requester").value
    return trip, request, payment


def test_create_request_requires_announced_trip(make_trip, trips, lifecycle):
    trip = make_trip()
    trips.advance(trip.id, TripStatus.TRAVELING)

    outcome = lifecycle.create_request(
        trip.id, "requester-1", [{"name": "bread", "quantity": 1, "estimated_price_cents": 400}], 500, 300
    )

    assert isinstance(outcome, ValidationError)
    assert outcome.message == "trip is not accepting requests"


def test_create_request_on_full_trip(make_trip, make_request, lifecycle):
    trip = make_trip(capacity=1)
    request = make_request(trip.id)
    lifecycle.accept(request.id)

    outcome = lifecycle.create_request(
        trip.id, "requester-2", [{"name": "eggs", "quantity": 2, "estimated_price_cents": 350}], 1000, 300
    )

    assert isinstance(outcome, CapacityExhausted)


def test_create_request_validation(make_trip, lifecycle):
    trip = make_trip()

    assert isinstance(lifecycle.create_request(trip.id, "requester-1", [], 500, 300), ValidationError)
    assert isinstance(
        lifecycle.create_request(trip.id, "requester-1", [{"name": "x", "quantity": 0, "estimated_price_cents": 1}], 500, 300),
        ValidationError,
    )
    assert isinstance(
        lifecycle.create_request("no-such-trip", "r", [{"name": "x", "quantity": 1, "estimated_price_cents": 1}], 5, 3),
        NotFoundError,
    )


def test_total_cost_caps_items_at_budget(make_trip, lifecycle):
    trip = make_trip()
    request = lifecycle.create_request(
        trip.id,
        "requester-1",
        [
            {"name": "coffee beans", "quantity": 2, "estimated_price_cents": 1800},
            {"name": "filters", "quantity": 1, "estimated_price_cents": 600},
        ],
        max_item_budget_cents=4000,
        delivery_fee_cents=700,
        tip_cents=200,
    ).value

    cost = lifecycle.cost(request.id).value

    assert cost.items_cents == 4000
    assert cost.total_cents == 4900


def test_pending_requests_ordered_by_fee(make_trip, make_request, lifecycle):
    trip = make_trip(capacity=5)
    low = make_request(trip.id, delivery_fee_cents=300)
    high = make_request(trip.id, delivery_fee_cents=900)
    accepted = make_request(trip.id, delivery_fee_cents=1200)
    lifecycle.accept(accepted.id)

    listed = lifecycle.list_pending_for_trip(trip.id).value

    assert [r.id for r in listed] == [high.id, low.id]


def test_pending_requests_for_unknown_trip(lifecycle):
    outcome = lifecycle.list_pending_for_trip("no-such-trip")

    assert isinstance(outcome, NotFoundError)
    assert outcome.details["entity_type"] == "trip"


def test_accept_reserves_capacity(make_trip, make_request, lifecycle, ledger):
    trip = make_trip(capacity=2)
    request = make_request(trip.id)

    outcome = lifecycle.accept(request.id)

    assert outcome.ok
    assert outcome.value.status == RequestStatus.ACCEPTED.value
    assert outcome.value.accepted_at is not None
    assert ledger.available(trip.id).value == 1


def test_accept_twice_is_an_invalid_transition(make_trip, make_request, lifecycle, ledger):
    trip = make_trip(capacity=2)
    request = make_request(trip.id)
    lifecycle.accept(request.id)

    outcome = lifecycle.accept(request.id)

    assert isinstance(outcome, InvalidStatusTransition)
    assert outcome.details["from_status"] == "ACCEPTED"
    assert ledger.available(trip.id).value == 1


@pytest.mark.parametrize("operation", ["mark_purchased", "deliver"])
def test_pending_request_cannot_skip_ahead(make_trip, make_request, lifecycle, operation):
    trip = make_trip()
    request = make_request(trip.id)

    outcome = getattr(lifecycle, operation)(request.id)

    assert isinstance(outcome, InvalidStatusTransition)
    assert lifecycle.get_request(request.id).value.status == RequestStatus.PENDING.value


def test_authorize_requires_accepted_request(make_trip, make_request, lifecycle):
    trip = make_trip()
    request = make_request(trip.id)

    assert isinstance(lifecycle.authorize_payment(request.id, "cus_1"), ValidationError)


def test_authorize_is_idempotent_for_live_payment(make_trip, make_request, lifecycle, provider):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)

    again = lifecycle.authorize_payment(request.id, "cus_requester")

    assert again.value.id == payment.id
    assert payment.status == PaymentStatus.AUTHORIZED.value
    assert payment.amount_cents == 2000
    assert len(provider.calls_for("create_intent")) == 1
    assert lifecycle.get_request(request.id).value.payment_id == payment.id


def test_happy_path_to_payout(make_trip, make_request, lifecycle, escrow, ledger):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)

    assert lifecycle.mark_purchased(request.id).value.status == RequestStatus.PURCHASED.value
    assert escrow.get_payment(payment.id).value.status == PaymentStatus.CAPTURED.value
    assert lifecycle.deliver(request.id).value.status == RequestStatus.DELIVERED.value
    paid = lifecycle.payout(request.id, "acct_traveler")

    assert paid.value.status == PaymentStatus.TRANSFERRED.value
    assert ledger.available(trip.id).value == 1
    assert isinstance(lifecycle.cancel(request.id), InvalidStatusTransition)


def test_purchase_with_actual_prices_captures_actual_total(make_trip, make_request, lifecycle, escrow):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)

    purchased = lifecycle.mark_purchased(request.id, actual_item_prices_cents=[1200])

    assert purchased.value.items[0]["actual_price_cents"] == 1200
    cost = lifecycle.cost(request.id).value
    assert cost.actual_prices is True
    assert cost.items_cents == 1200
    assert cost.total_cents == 1700
    assert escrow.get_payment(payment.id).value.captured_amount_cents == 1700


def test_purchase_needs_one_actual_price_per_item(make_trip, make_request, lifecycle, escrow):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)

    outcome = lifecycle.mark_purchased(request.id, actual_item_prices_cents=[1200, 300])

    assert isinstance(outcome, ValidationError)
    assert lifecycle.cost(request.id).value.actual_prices is False
    assert escrow.get_payment(payment.id).value.status == PaymentStatus.AUTHORIZED.value


def test_capture_decline_keeps_request_accepted(make_trip, make_request, lifecycle, escrow):
    trip = make_trip()
    request = make_request(trip.id)
    lifecycle.accept(request.id)
    payment = lifecycle.authorize_payment(request.id, "force-capture-decline-card").value

    with pytest.raises(ProviderDeclined):
        lifecycle.mark_purchased(request.id)

    assert lifecycle.get_request(request.id).value.status == RequestStatus.ACCEPTED.value
    assert escrow.get_payment(payment.id).value.status == PaymentStatus.FAILED.value


def test_new_authorization_after_failed_payment(make_trip, make_request, lifecycle, escrow):
    trip = make_trip()
    request = make_request(trip.id)
    lifecycle.accept(request.id)
    failed = lifecycle.authorize_payment(request.id, "force-capture-decline-card").value
    with pytest.raises(ProviderDeclined):
        lifecycle.mark_purchased(request.id)

    retry = lifecycle.authorize_payment(request.id, "cus_other_card").value

    assert retry.id != failed.id
    assert retry.status == PaymentStatus.AUTHORIZED.value
    assert lifecycle.get_request(request.id).value.payment_id == retry.id


def test_declined_card_can_be_replaced_by_another(make_trip, make_request, lifecycle, provider):
    trip = make_trip()
    request = make_request(trip.id)
    lifecycle.accept(request.id)
    with pytest.raises(ProviderDeclined):
        lifecycle.authorize_payment(request.id, "force-decline-card")

    retry = lifecycle.authorize_payment(request.id, "cus_other_card").value

    assert retry.status == PaymentStatus.AUTHORIZED.value
    assert retry.payer_ref == "cus_other_card"
    declined_key, retry_key = provider.calls_for("create_intent")
    assert declined_key != retry_key
    assert lifecycle.get_request(request.id).value.payment_id == retry.id


def test_cancel_pending_request_keeps_capacity(make_trip, make_request, lifecycle, ledger):
    trip = make_trip(capacity=2)
    request = make_request(trip.id)

    outcome = lifecycle.cancel(request.id, "changed my mind")

    assert outcome.value.status == RequestStatus.CANCELLED.value
    assert outcome.value.cancel_reason == "changed my mind"
    assert ledger.available(trip.id).value == 2


def test_cancel_accepted_request_voids_authorization(make_trip, make_request, lifecycle, escrow, ledger, provider):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)

    assert lifecycle.cancel(request.id).ok

    assert escrow.get_payment(payment.id).value.status == PaymentStatus.CANCELLED.value
    assert ledger.available(trip.id).value == 2
    assert provider.calls_for("refund") == []


def test_cancel_purchased_request_refunds_exactly_once(make_trip, make_request, lifecycle, escrow, ledger, provider):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)
    lifecycle.mark_purchased(request.id)

    outcome = lifecycle.cancel(request.id, "store closed")

    assert outcome.value.status == RequestStatus.CANCELLED.value
    refreshed = escrow.get_payment(payment.id).value
    assert refreshed.status == PaymentStatus.REFUNDED.value
    assert refreshed.refunded_amount_cents == refreshed.captured_amount_cents == 2000
    assert len(provider.calls_for("refund")) == 1
    refunds = [row for row in escrow.list_payments(request.id) if row.type == PaymentType.REFUND.value]
    assert len(refunds) == 1
    assert ledger.available(trip.id).value == 2
    assert isinstance(lifecycle.cancel(request.id), InvalidStatusTransition)
    assert len(provider.calls_for("refund")) == 1


def test_concurrent_cancels_refund_once(make_trip, make_request, lifecycle, escrow, ledger, provider):
    trip, request, payment = _accepted_and_authorized(make_trip, make_request, lifecycle)
    lifecycle.mark_purchased(request.id)
    barrier = threading.Barrier(2)
    outcomes = []
    errors = []
    lock = threading.Lock()

    def cancel():
        barrier.wait()
        try:
            outcome = lifecycle.cancel(request.id, "store closed")
        except Exception as exc:
            with lock:
                errors.append(exc)
            return
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=cancel) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sum(1 for outcome in outcomes if outcome.ok) == 1
    assert len(set(provider.calls_for("refund"))) == 1
    refunds = [row for row in escrow.list_payments(request.id) if row.type == PaymentType.REFUND.value]
    assert len(refunds) == 1
    refreshed = escrow.get_payment(payment.id).value
    assert refreshed.refunded_amount_cents == refreshed.captured_amount_cents == 2000
    assert lifecycle.get_request(request.id).value.status == RequestStatus.CANCELLED.value
    assert ledger.available(trip.id).value == 2


def test_failed_refund_leaves_request_untouched(make_trip, make_request, lifecycle, provider, ledger, monkeypatch):
    trip, request, _ = _accepted_and_authorized(make_trip, make_request, lifecycle)
    lifecycle.mark_purchased(request.id)

    def timeout(*args, **kwargs):
        raise ProviderTimeout()

    monkeypatch.setattr(provider, "refund", timeout)

    with pytest.raises(ProviderTimeout):
        lifecycle.cancel(request.id)

    assert lifecycle.get_request(request.id).value.status == RequestStatus.PURCHASED.value
    assert ledger.available(trip.id).value == 1


def test_payout_requires_delivery(make_trip, make_request, lifecycle):
    trip, request, _ = _accepted_and_authorized(make_trip, make_request, lifecycle)
    lifecycle.mark_purchased(request.id)

    assert isinstance(lifecycle.payout(request.id, "acct_traveler"), ValidationError)


def test_every_transition_emits_a_status_event(make_trip, make_request, lifecycle, session_factory):
    trip = make_trip()
    request = make_request(trip.id)
    lifecycle.accept(request.id)
    lifecycle.cancel(request.id)

    with session_factory() as db:
        rows = db.execute(
            select(OutboxEvent).where(OutboxEvent.aggregate_id == request.id).order_by(OutboxEvent.created_at)
        ).scalars().all()

    changes = [(row.payload["payload"]["from_status"], row.payload["payload"]["to_status"]) for row in rows]
    assert changes == [(None, "PENDING"), ("PENDING", "ACCEPTED"), ("ACCEPTED", "CANCELLED")]
    assert all(row.topic == "status.events" for row in rows)
    assert rows[0].payload["payload"]["entity_type"] == "delivery_request"


def test_rejected_accept_emits_no_event(make_trip, make_request, lifecycle, session_factory):
    trip = make_trip(capacity=1)
    first = make_request(trip.id)
    second = make_request(trip.id)
    lifecycle.accept(first.id)

    assert isinstance(lifecycle.accept(second.id), CapacityExhausted)

    with session_factory() as db:
        rows = db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == second.id)).scalars().all()
    assert [row.payload["payload"]["to_status"] for row in rows] == ["PENDING"]
