"""Provider webhook reconciliation.

The provider reports payment state asynchronously and may deliver the same
event several times, late, or out of order. Each delivery is verified, looked
up by its payment intent and applied through the escrow engine only when it
moves the payment forward. Deliveries for intents we never created, and event
types we do not know, are acknowledged and dropped.
"""

from dataclasses import dataclass
from enum import Enum

from errandpay.common.config import settings
from errandpay.common.logging import event_id_ctx, logger
from errandpay.common.metrics import duplicate_webhooks_skipped_total, webhook_events_total
from errandpay.common.results import NotFoundError
from errandpay.common.state_machine import PaymentStatus
from errandpay.services.escrow.service import EscrowService
from errandpay.services.webhooks.signature import WebhookVerificationError, construct_event


class WebhookEventType(str, Enum):
    AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"
    SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw_type) -> "WebhookEventType":
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class WebhookResult:
    """Ack tells the provider to stop retrying; a Reject asks it to try again."""

    ack: bool
    reason: str
    status_code: int = 200

    @classmethod
    def accepted(cls, reason: str) -> "WebhookResult":
        return cls(ack=True, reason=reason, status_code=200)

    @classmethod
    def rejected(cls, reason: str, status_code: int) -> "WebhookResult":
        return cls(ack=False, reason=reason, status_code=status_code)


_FIXED_TARGETS = {
    WebhookEventType.AMOUNT_CAPTURABLE_UPDATED: PaymentStatus.AUTHORIZED,
    WebhookEventType.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookEventType.CANCELED: PaymentStatus.CANCELLED,
    WebhookEventType.CHARGE_REFUNDED: PaymentStatus.REFUNDED,
}


def _target_for(event_type: WebhookEventType, obj: dict) -> PaymentStatus:
    if event_type == WebhookEventType.SUCCEEDED:
        # Without a received amount the intent is only confirmed, not captured.
        if int(obj.get("amount_received") or 0) > 0:
            return PaymentStatus.CAPTURED
        return PaymentStatus.AUTHORIZED
    return _FIXED_TARGETS[event_type]


def _intent_id(event_type: WebhookEventType, obj: dict) -> str | None:
    if event_type == WebhookEventType.CHARGE_REFUNDED:
        return obj.get("payment_intent")
    return obj.get("id")


def _reported_amount(event_type: WebhookEventType, obj: dict) -> int | None:
    field_name = {
        WebhookEventType.SUCCEEDED: "amount_received",
        WebhookEventType.CHARGE_REFUNDED: "amount_refunded",
    }.get(event_type)
    if field_name is None or obj.get(field_name) is None:
        return None
    return int(obj[field_name])


def _failure_reason(obj: dict) -> str | None:
    error = obj.get("last_payment_error") or {}
    return error.get("message") or obj.get("cancellation_reason")


@dataclass(frozen=True)
class ParsedEvent:
    event_id: str
    raw_type: object
    event_type: WebhookEventType
    intent_id: str | None = None
    target: PaymentStatus | None = None
    amount_cents: int | None = None
    failure_reason: str | None = None


def _parse_event(event: dict) -> ParsedEvent:
    """Pull everything the handler needs out of a verified event.

    Any field of the wrong shape raises `ValueError`, `KeyError`, `TypeError`
    or `AttributeError`, which the caller reports as a malformed payload.
    """

    event_id = str(event["id"])
    raw_type = event.get("type")
    obj = event["data"]["object"]
    if not isinstance(obj, dict):
        raise TypeError("data.object is not an object")
    event_type = WebhookEventType.parse(raw_type)
    if event_type == WebhookEventType.UNKNOWN:
        return ParsedEvent(event_id, raw_type, event_type)
    return ParsedEvent(
        event_id,
        raw_type,
        event_type,
        intent_id=_intent_id(event_type, obj),
        target=_target_for(event_type, obj),
        amount_cents=_reported_amount(event_type, obj),
        failure_reason=_failure_reason(obj),
    )


class WebhookReconciler:
    """Verify, deduplicate and apply provider webhook deliveries."""

    def __init__(
        self,
        escrow: EscrowService,
        dedup_cache=None,
        secret: str | None = None,
        tolerance_seconds: int | None = None,
        dedup_ttl_seconds: int | None = None,
        service_name: str = "webhooks",
    ) -> None:
        self.escrow = escrow
        self.dedup_cache = dedup_cache
        self.secret = settings.webhook_secret if secret is None else secret
        self.tolerance_seconds = settings.webhook_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
        self.dedup_ttl_seconds = settings.webhook_dedup_ttl_seconds if dedup_ttl_seconds is None else dedup_ttl_seconds
        self.service_name = service_name

    # ------------------------------------------------------------ dedup

    def _dedup_key(self, event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    def _seen(self, event_id: str) -> bool:
        if self.dedup_cache is None:
            return False
        try:
            return bool(self.dedup_cache.get(self._dedup_key(event_id)))
        except Exception as exc:
            logger.warning("webhook_dedup_read_failed event_id=%s error=%s", event_id, exc)
            return False

    def _remember(self, event_id: str) -> None:
        if self.dedup_cache is None:
            return
        try:
            self.dedup_cache.setex(self._dedup_key(event_id), self.dedup_ttl_seconds, "1")
        except Exception as exc:
            logger.warning("webhook_dedup_write_failed event_id=%s error=%s", event_id, exc)

    def _count(self, event_type: str, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, event_type=event_type, outcome=outcome).inc()

    # ---------------------------------------------------------- handling

    def handle(self, raw: bytes, signature_header: str | None) -> WebhookResult:
        """Process one delivery and say whether the provider should stop retrying."""

        try:
            event = construct_event(raw, signature_header, self.secret, self.tolerance_seconds)
        except WebhookVerificationError as exc:
            logger.warning("webhook_rejected reason=%s", exc)
            self._count("unverified", "rejected")
            return WebhookResult.rejected(f"verification_failed: {exc}", 400)
        except (ValueError, TypeError, AttributeError) as exc:
            return self._malformed(exc)

        try:
            parsed = _parse_event(event)
        except (ValueError, KeyError, AttributeError, TypeError) as exc:
            return self._malformed(exc)

        event_id = parsed.event_id
        event_id_ctx.set(event_id)
        label = parsed.event_type.value

        if self._seen(event_id):
            duplicate_webhooks_skipped_total.labels(service=self.service_name).inc()
            self._count(label, "duplicate")
            logger.info("webhook_duplicate event_id=%s type=%s", event_id, parsed.raw_type)
            return WebhookResult.accepted("duplicate")

        if parsed.event_type == WebhookEventType.UNKNOWN:
            logger.info("webhook_ignored_unknown_type event_id=%s type=%s", event_id, parsed.raw_type)
            self._count(label, "ignored")
            self._remember(event_id)
            return WebhookResult.accepted("unknown_event_type")

        intent_id = parsed.intent_id
        if not intent_id:
            logger.warning("webhook_ignored_missing_intent event_id=%s type=%s", event_id, parsed.raw_type)
            self._count(label, "ignored")
            self._remember(event_id)
            return WebhookResult.accepted("missing_payment_intent")

        try:
            outcome = self.escrow.reconcile(
                intent_id,
                parsed.target,
                event_id,
                amount_cents=parsed.amount_cents,
                failure_reason=parsed.failure_reason,
            )
        except Exception as exc:
            logger.exception("webhook_processing_failed event_id=%s intent_id=%s error=%s", event_id, intent_id, exc)
            self._count(label, "error")
            return WebhookResult.rejected("internal_error", 500)

        if isinstance(outcome, NotFoundError):
            logger.info("webhook_ignored_unmatched_intent event_id=%s intent_id=%s", event_id, intent_id)
            self._count(label, "unmatched")
            self._remember(event_id)
            return WebhookResult.accepted("no_local_payment")

        self._count(label, outcome.value)
        self._remember(event_id)
        logger.info(
            "webhook_processed event_id=%s intent_id=%s target=%s outcome=%s",
            event_id,
            intent_id,
            parsed.target.value,
            outcome.value,
        )
        return WebhookResult.accepted(outcome.value)

    def _malformed(self, exc: Exception) -> WebhookResult:
        logger.warning("webhook_rejected reason=malformed_payload error=%s", exc)
        self._count("malformed", "rejected")
        return WebhookResult.rejected("malformed_payload", 400)
