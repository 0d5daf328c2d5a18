"""Stripe adapter: calls carry idempotency keys and stripe errors map onto provider errors."""

from types import SimpleNamespace

import pytest
import stripe

from errandpay.services.escrow.provider import (
    PaymentProviderError,
    ProviderDeclined,
    ProviderTimeout,
    StripePaymentProvider,
)


class FakeStripe:
    """Records resource calls the way the stripe module would receive them."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.error = error
        self.PaymentIntent = SimpleNamespace(
            create=self._method("PaymentIntent.create", lambda **p: SimpleNamespace(
                id="pi_123", status="requires_capture", client_secret="pi_123_secret"
            )),
            capture=self._method("PaymentIntent.capture", lambda intent_id, **p: SimpleNamespace(
                id=intent_id, amount_received=p["amount_to_capture"]
            )),
            cancel=self._method("PaymentIntent.cancel", lambda intent_id, **p: SimpleNamespace(id=intent_id)),
            retrieve=self._method("PaymentIntent.retrieve", lambda intent_id, **p: SimpleNamespace(
                id=intent_id, latest_charge="ch_456"
            )),
        )
        self.Refund = SimpleNamespace(create=self._method("Refund.create", lambda **p: SimpleNamespace(id="re_1")))
        self.Transfer = SimpleNamespace(create=self._method("Transfer.create", lambda **p: SimpleNamespace(id="tr_1")))

    def _method(self, name, respond):
        def call(*args, **params):
            self.calls.append((name, args, params))
            if self.error is not None:
                raise self.error
            return respond(*args, **params)

        return call


def _provider(fake):
    return StripePaymentProvider(api_key="sk_test_123", stripe_client=fake)


def test_create_intent_is_manual_capture_with_idempotency_key():
    fake = FakeStripe()

    intent = _provider(fake).create_intent(2000, "USD", "cus_1", idempotency_key="authorize:req-1:2000")

    assert intent.intent_id == "pi_123"
    assert intent.status == "requires_capture"
    name, _, params = fake.calls[0]
    assert name == "PaymentIntent.create"
    assert params["idempotency_key"] == "authorize:req-1:2000"
    assert params["api_key"] == "sk_test_123"
    assert params["capture_method"] == "manual"
    assert params["currency"] == "usd"


def test_capture_returns_received_amount():
    fake = FakeStripe()

    captured = _provider(fake).capture("pi_123", 1500, idempotency_key="capture:pay-1:1500")

    assert captured == 1500
    assert fake.calls[0][1] == ("pi_123",)


def test_card_error_is_a_decline():
    fake = FakeStripe(stripe.CardError(message="Your card was declined.", param=None, code="card_declined", http_status=402))

    with pytest.raises(ProviderDeclined) as excinfo:
        _provider(fake).capture("pi_123", 2000, idempotency_key="capture:pay-1:2000")

    assert excinfo.value.code == "card_declined"
    assert excinfo.value.retryable is False


@pytest.mark.parametrize(
    "error",
    [
        stripe.RateLimitError(message="too many requests", http_status=429),
        stripe.APIError(message="internal error", http_status=500),
    ],
)
def test_server_side_errors_are_retryable(error):
    with pytest.raises(PaymentProviderError) as excinfo:
        _provider(FakeStripe(error)).refund("pi_123", 500, idempotency_key="refund:pay-1:0:500")

    assert excinfo.value.retryable is True
    assert not isinstance(excinfo.value, ProviderDeclined)


def test_connection_error_is_reported_as_timeout():
    fake = FakeStripe(stripe.APIConnectionError(message="Request timed out"))

    with pytest.raises(ProviderTimeout):
        _provider(fake).cancel("pi_123", idempotency_key="cancel:pay-1")


def test_transfer_is_funded_from_the_intents_charge():
    fake = FakeStripe()

    transfer_id = _provider(fake).transfer(1800, "USD", "acct_traveler", "pi_123", idempotency_key="transfer:pay-1")

    assert transfer_id == "tr_1"
    name, _, params = fake.calls[-1]
    assert name == "Transfer.create"
    assert params["source_transaction"] == "ch_456"
    assert params["destination"] == "acct_traveler"
    assert params["idempotency_key"] == "transfer:pay-1"
