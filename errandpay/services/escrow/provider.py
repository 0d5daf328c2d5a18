"""Payment provider boundary.

`PaymentProvider` is what the escrow engine talks to. Every call takes an
idempotency key, so a caller that timed out can repeat the call with the same
key without moving money twice.

Two implementations ship here: `StripePaymentProvider`, built on the stripe
library, and `SimulatedPaymentProvider`, an in-process stand-in used by local
stacks and the test-suite.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import stripe

from errandpay.common.config import settings
from errandpay.common.logging import logger
from errandpay.common.metrics import provider_calls_total, provider_latency_seconds


class PaymentProviderError(Exception):
    """Provider-side or transport failure.

    `retryable` tells the caller whether repeating the call with the same
    idempotency key can succeed.
    """

    def __init__(self, message: str, code: str = "PROVIDER_ERROR", retryable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable


class ProviderTimeout(PaymentProviderError):
    def __init__(self, message: str = "payment provider timed out") -> None:
        super().__init__(message, code="PROVIDER_TIMEOUT", retryable=True)


class ProviderDeclined(PaymentProviderError):
    """The provider answered and refused the operation."""

    def __init__(self, message: str, code: str = "PROVIDER_DECLINE") -> None:
        super().__init__(message, code=code, retryable=False)


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    # Provider-side status, e.g. `requires_capture` once funds are held.
    status: str
    client_secret: str | None = None


def idempotency_key(operation: str, payment_id: str, *params) -> str:
    """Deterministic key from the operation, the payment and its fixed inputs."""

    parts = [operation, payment_id, *(str(param) for param in params if param is not None)]
    return ":".join(parts)


class PaymentProvider(ABC):
    name = "abstract"

    @abstractmethod
    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        payer_ref: str,
        *,
        idempotency_key: str,
        manual_capture: bool = True,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> IntentResult:
        """Create a payment intent; with manual capture funds are only held."""

    @abstractmethod
    def capture(self, intent_id: str, amount_cents: int, *, idempotency_key: str) -> int:
        """Capture held funds and return the captured amount."""

    @abstractmethod
    def cancel(self, intent_id: str, *, idempotency_key: str) -> None:
        """Release held funds of an uncaptured intent."""

    @abstractmethod
    def refund(self, intent_id: str, amount_cents: int, *, idempotency_key: str, reason: str | None = None) -> str:
        """Refund captured funds and return the provider refund id."""

    @abstractmethod
    def transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account_ref: str,
        source_ref: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        """Move funds to a connected account and return the transfer id."""


class StripePaymentProvider(PaymentProvider):
    """Stripe adapter: manual-capture PaymentIntents, Refunds and Connect Transfers.

    `stripe_client` defaults to the `stripe` module itself; tests pass a
    stand-in exposing the same resource classes.
    """

    name = "stripe"

    def __init__(self, api_key: str | None = None, timeout_seconds: float | None = None, stripe_client=stripe) -> None:
        self._stripe = stripe_client
        self.api_key = api_key or settings.provider_api_key
        if stripe_client is stripe:
            # The library keeps one process-wide HTTP client.
            stripe.default_http_client = stripe.RequestsClient(
                timeout=timeout_seconds or settings.provider_timeout_seconds
            )

    def _call(self, operation: str, method, *args, **params):
        start = time.perf_counter()
        outcome = "error"
        try:
            try:
                result = method(*args, api_key=self.api_key, **params)
            except stripe.APIConnectionError as exc:
                # The request may or may not have reached Stripe.
                outcome = "timeout"
                raise ProviderTimeout(f"{operation} did not complete: {exc}") from exc
            except (stripe.RateLimitError, stripe.APIError) as exc:
                raise PaymentProviderError(f"{operation} failed: {exc}", code="PROVIDER_UNAVAILABLE") from exc
            except stripe.StripeError as exc:
                if (exc.http_status or 0) >= 500:
                    raise PaymentProviderError(f"{operation} failed: {exc}", code="PROVIDER_UNAVAILABLE") from exc
                outcome = "declined"
                raise ProviderDeclined(exc.user_message or str(exc), code=exc.code or "PROVIDER_DECLINE") from exc
            outcome = "ok"
            return result
        finally:
            provider_latency_seconds.labels(service=self.name, operation=operation).observe(
                max(0.0, time.perf_counter() - start)
            )
            provider_calls_total.labels(service=self.name, operation=operation, outcome=outcome).inc()

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        payer_ref: str,
        *,
        idempotency_key: str,
        manual_capture: bool = True,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> IntentResult:
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": payer_ref,
            "capture_method": "manual" if manual_capture else "automatic",
            "confirm": True,
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description
        intent = self._call("create_intent", self._stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params)
        return IntentResult(intent_id=intent.id, status=intent.status, client_secret=intent.client_secret)

    def capture(self, intent_id: str, amount_cents: int, *, idempotency_key: str) -> int:
        intent = self._call(
            "capture",
            self._stripe.PaymentIntent.capture,
            intent_id,
            amount_to_capture=amount_cents,
            idempotency_key=idempotency_key,
        )
        return int(intent.amount_received or amount_cents)

    def cancel(self, intent_id: str, *, idempotency_key: str) -> None:
        self._call("cancel", self._stripe.PaymentIntent.cancel, intent_id, idempotency_key=idempotency_key)

    def refund(self, intent_id: str, amount_cents: int, *, idempotency_key: str, reason: str | None = None) -> str:
        refund = self._call(
            "refund",
            self._stripe.Refund.create,
            payment_intent=intent_id,
            amount=amount_cents,
            metadata={"reason": reason} if reason else {},
            idempotency_key=idempotency_key,
        )
        return refund.id

    def transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account_ref: str,
        source_ref: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        source_transaction = source_ref
        if source_ref.startswith("pi_"):
            # Transfers are funded from the charge, not from the intent.
            intent = self._call("retrieve_intent", self._stripe.PaymentIntent.retrieve, source_ref)
            source_transaction = intent.latest_charge
        transfer = self._call(
            "transfer",
            self._stripe.Transfer.create,
            amount=amount_cents,
            currency=currency.lower(),
            destination=destination_account_ref,
            source_transaction=source_transaction,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return transfer.id


class SimulatedPaymentProvider(PaymentProvider):
    """In-process provider with deterministic outcomes.

    Payer refs starting with `force-decline` are declined at intent creation,
    `force-timeout` time out, and `force-capture-decline` authorize fine but
    fail at capture. Repeating a call with the same idempotency key replays the
    first response, as a real provider does.
    """

    name = "simulated"

    def __init__(self) -> None:
        self.intents: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self._responses: dict[str, object] = {}
        self._lock = threading.Lock()

    def _replay(self, operation: str, key: str):
        self.calls.append((operation, key))
        return self._responses.get(key)

    def _remember(self, operation: str, key: str, response):
        self._responses[key] = response
        provider_calls_total.labels(service=self.name, operation=operation, outcome="ok").inc()
        return response

    def _intent(self, intent_id: str) -> dict:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ProviderDeclined(f"no such payment intent {intent_id}", code="resource_missing")
        return intent

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        payer_ref: str,
        *,
        idempotency_key: str,
        manual_capture: bool = True,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> IntentResult:
        with self._lock:
            cached = self._replay("create_intent", idempotency_key)
            if cached is not None:
                return cached
            lowered = payer_ref.lower()
            if lowered.startswith("force-timeout"):
                raise ProviderTimeout()
            if lowered.startswith("force-decline"):
                raise ProviderDeclined("card declined", code="card_declined")
            intent_id = f"pi_{uuid4().hex[:24]}"
            status = "requires_capture" if manual_capture else "succeeded"
            self.intents[intent_id] = {
                "amount": amount_cents,
                "amount_received": 0 if manual_capture else amount_cents,
                "amount_refunded": 0,
                "currency": currency,
                "payer_ref": payer_ref,
                "status": status,
            }
            result = IntentResult(intent_id=intent_id, status=status, client_secret=f"{intent_id}_secret")
            return self._remember("create_intent", idempotency_key, result)

    def capture(self, intent_id: str, amount_cents: int, *, idempotency_key: str) -> int:
        with self._lock:
            cached = self._replay("capture", idempotency_key)
            if cached is not None:
                return cached
            intent = self._intent(intent_id)
            if intent["payer_ref"].lower().startswith("force-capture-decline"):
                raise ProviderDeclined("capture declined by issuer", code="card_declined")
            if intent["status"] != "requires_capture":
                raise ProviderDeclined(f"intent is {intent['status']}", code="payment_intent_unexpected_state")
            if amount_cents > intent["amount"]:
                raise ProviderDeclined("amount_to_capture exceeds authorized amount", code="amount_too_large")
            intent["status"] = "succeeded"
            intent["amount_received"] = amount_cents
            return self._remember("capture", idempotency_key, amount_cents)

    def cancel(self, intent_id: str, *, idempotency_key: str) -> None:
        with self._lock:
            if self._replay("cancel", idempotency_key) is not None:
                return None
            intent = self._intent(intent_id)
            if intent["status"] == "succeeded":
                raise ProviderDeclined("captured intents cannot be canceled", code="payment_intent_unexpected_state")
            intent["status"] = "canceled"
            self._remember("cancel", idempotency_key, True)
            return None

    def refund(self, intent_id: str, amount_cents: int, *, idempotency_key: str, reason: str | None = None) -> str:
        with self._lock:
            cached = self._replay("refund", idempotency_key)
            if cached is not None:
                return cached
            intent = self._intent(intent_id)
            if intent["amount_refunded"] + amount_cents > intent["amount_received"]:
                raise ProviderDeclined("refund exceeds captured amount", code="charge_already_refunded")
            intent["amount_refunded"] += amount_cents
            logger.info("simulated refund intent=%s amount=%s reason=%s", intent_id, amount_cents, reason)
            return self._remember("refund", idempotency_key, f"re_{uuid4().hex[:24]}")

    def transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account_ref: str,
        source_ref: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        with self._lock:
            cached = self._replay("transfer", idempotency_key)
            if cached is not None:
                return cached
            intent = self._intent(source_ref)
            if amount_cents > intent["amount_received"] - intent["amount_refunded"]:
                raise ProviderDeclined("transfer exceeds available source funds", code="insufficient_funds")
            return self._remember("transfer", idempotency_key, f"tr_{uuid4().hex[:24]}")

    def calls_for(self, operation: str) -> list[str]:
        return [key for op, key in self.calls if op == operation]
