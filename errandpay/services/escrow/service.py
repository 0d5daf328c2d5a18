"""Payment escrow engine.

Holds a requester's funds from authorization until the traveler has bought
and delivered the items, then pays the traveler out or refunds the requester.

Provider calls are made outside any database transaction: the engine reads
and checks the payment, talks to the provider with a deterministic
idempotency key, then applies the transition with a guarded UPDATE on
`(id, status, state_version)`. A provider timeout therefore leaves the row
untouched and the same call can simply be repeated.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from errandpay.common.config import settings
from errandpay.common.logging import entity_id_ctx, logger
from errandpay.common.metrics import invalid_transitions_total, payment_transitions_total
from errandpay.common.outbox import enqueue_status_change
from errandpay.common.results import (
    ConcurrencyConflict,
    Ok,
    PayoutAccountMissing,
    ValidationError,
    invalid_transition,
    not_found,
)
from errandpay.common.state_machine import (
    PAYMENT_TRANSITIONS,
    REFUNDABLE_PAYMENT_STATUSES,
    PaymentStatus,
    PaymentType,
    is_allowed,
)
from errandpay.common.tracing import provider_span
from errandpay.services.escrow.provider import (
    PaymentProvider,
    PaymentProviderError,
    ProviderDeclined,
    idempotency_key,
)
from errandpay.services.marketplace.models import OutboxEvent, Payment, PaymentTimeline
from errandpay.services.marketplace.transitions import guarded_transition


# Provider intent statuses meaning the funds are held and capturable.
HELD_INTENT_STATUSES = {"requires_capture"}
FAILED_INTENT_STATUSES = {"requires_payment_method", "canceled"}
PAYOUT_ACCOUNT_PREFIX = "acct_"


class EscrowService:
    """Owns the payment state machine and every payments row."""

    def __init__(
        self,
        session_factory,
        provider: PaymentProvider,
        service_name: str = "escrow",
        platform_fee_bps: int | None = None,
        default_currency: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.service_name = service_name
        self.platform_fee_bps = settings.platform_fee_bps if platform_fee_bps is None else platform_fee_bps
        self.default_currency = (default_currency or settings.default_currency).upper()

    # ------------------------------------------------------------------ reads

    def get_payment(self, payment_id: str):
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                return not_found("payment", payment_id)
            return Ok(payment)

    def list_payments(self, request_id: str) -> list[Payment]:
        """All rows for a request: the charge plus its refund/payout rows."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment).where(Payment.request_id == request_id).order_by(Payment.created_at)
                ).scalars()
            )

    def timeline(self, payment_id: str) -> list[PaymentTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.created_at)
                ).scalars()
            )

    def find_by_intent(self, db, intent_id: str) -> Payment | None:
        return db.execute(
            select(Payment).where(
                Payment.provider_intent_id == intent_id,
                Payment.type == PaymentType.CHARGE.value,
            )
        ).scalar_one_or_none()

    # ------------------------------------------------------------ internals

    def _record_timeline(self, db, payment_id: str, from_state, to_state, reason: str, event_id=None) -> None:
        db.add(
            PaymentTimeline(
                payment_id=payment_id,
                from_state=getattr(from_state, "value", from_state),
                to_state=getattr(to_state, "value", to_state),
                reason=reason,
                event_id=event_id,
            )
        )
        db.flush()

    def _transition(
        self,
        db,
        payment: Payment,
        new_status: PaymentStatus,
        reason: str,
        event_id: str | None = None,
        **values,
    ) -> bool:
        """Apply one transition; False if it is no longer legal or the row moved under us."""

        if not is_allowed(PAYMENT_TRANSITIONS, payment.status, new_status):
            return False
        from_status = payment.status
        if not guarded_transition(db, Payment, payment, new_status, **values):
            return False
        self._record_timeline(db, payment.id, from_status, new_status, reason, event_id)
        payment_transitions_total.labels(
            service=self.service_name,
            from_status=from_status,
            to_status=new_status.value,
        ).inc()
        logger.info(
            "payment_transition payment_id=%s from=%s to=%s reason=%s",
            payment.id,
            from_status,
            new_status.value,
            reason,
        )
        return True

    def _load_charge(self, payment_id: str):
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None:
            return not_found("payment", payment_id)
        if payment.type != PaymentType.CHARGE.value:
            return ValidationError("only charge payments can be operated on", {"type": payment.type})
        entity_id_ctx.set(payment.id)
        return Ok(payment)

    def _reject(self, payment: Payment, target: PaymentStatus):
        invalid_transitions_total.labels(service=self.service_name, entity_type="payment").inc()
        logger.warning(
            "invalid payment transition payment_id=%s from=%s to=%s",
            payment.id,
            payment.status,
            target.value,
        )
        return invalid_transition("payment", payment.id, payment.status, target.value)

    # ----------------------------------------------------------- operations

    def authorize(
        self,
        request_id: str,
        amount_cents: int,
        payer_ref: str,
        description: str | None = None,
        currency: str | None = None,
        idempotency_key_override: str | None = None,
    ):
        """Hold `amount_cents` on the payer's instrument for a request.

        Returns the existing row when the same idempotency key was already
        used. Nothing is persisted when the provider call fails.
        """

        if not request_id:
            return ValidationError("request_id is required")
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            return ValidationError("amount must be greater than zero", {"amount_cents": amount_cents})
        if not payer_ref:
            return ValidationError("payer_ref is required")
        currency = (currency or self.default_currency).upper()
        if len(currency) != 3:
            return ValidationError("currency must be a 3-letter code", {"currency": currency})

        key = idempotency_key_override or idempotency_key("authorize", request_id, amount_cents, currency, payer_ref)
        with self.session_factory() as db:
            existing = db.execute(select(Payment).where(Payment.idempotency_key == key)).scalar_one_or_none()
            if existing is not None:
                logger.info("authorize replay payment_id=%s key=%s", existing.id, key)
                return Ok(existing)

        description = description or f"Payment for delivery request {request_id}"
        with provider_span("create_intent"):
            intent = self.provider.create_intent(
                amount_cents,
                currency,
                payer_ref,
                idempotency_key=key,
                manual_capture=True,
                description=description,
                metadata={"request_id": request_id, "type": PaymentType.CHARGE.value},
            )

        with self.session_factory() as db:
            payment = Payment(
                request_id=request_id,
                type=PaymentType.CHARGE.value,
                provider_intent_id=intent.intent_id,
                payer_ref=payer_ref,
                amount_cents=amount_cents,
                captured_amount_cents=0,
                refunded_amount_cents=0,
                currency=currency,
                status=PaymentStatus.PENDING.value,
                state_version=0,
                idempotency_key=key,
                description=description,
            )
            db.add(payment)
            try:
                db.flush()
            except IntegrityError:
                # A concurrent retry with the same key inserted first.
                db.rollback()
                existing = db.execute(select(Payment).where(Payment.idempotency_key == key)).scalar_one()
                return Ok(existing)
            entity_id_ctx.set(payment.id)
            self._record_timeline(db, payment.id, None, PaymentStatus.PENDING, "payment_created")
            enqueue_status_change(db, OutboxEvent, "payment", payment.id, None, PaymentStatus.PENDING)
            if intent.status in HELD_INTENT_STATUSES:
                self._transition(db, payment, PaymentStatus.AUTHORIZED, "provider_authorized")
            elif intent.status in FAILED_INTENT_STATUSES:
                self._transition(
                    db,
                    payment,
                    PaymentStatus.FAILED,
                    f"provider_status:{intent.status}",
                    failure_reason=f"intent {intent.status}",
                    failed_at=datetime.now(timezone.utc),
                )
            db.commit()
            return Ok(payment)

    def capture(self, payment_id: str, amount_cents: int | None = None):
        """Capture held funds (all of them unless `amount_cents` is given).

        A provider decline marks the payment FAILED and re-raises; capture is
        never retried automatically. Timeouts leave it AUTHORIZED.
        """

        loaded = self._load_charge(payment_id)
        if not loaded.ok:
            return loaded
        payment = loaded.value
        if payment.status != PaymentStatus.AUTHORIZED.value:
            return self._reject(payment, PaymentStatus.CAPTURED)
        amount = payment.amount_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > payment.amount_cents:
            return ValidationError(
                "capture amount must be positive and not exceed the authorized amount",
                {"amount_cents": amount, "authorized_cents": payment.amount_cents},
            )

        key = idempotency_key("capture", payment.id, amount)
        try:
            with provider_span("capture", payment.id):
                captured = self.provider.capture(payment.provider_intent_id, amount, idempotency_key=key)
        except ProviderDeclined as exc:
            logger.error("capture declined payment_id=%s code=%s error=%s", payment.id, exc.code, exc.message)
            with self.session_factory() as db:
                current = db.get(Payment, payment.id)
                if current.status == PaymentStatus.AUTHORIZED.value:
                    self._transition(
                        db,
                        current,
                        PaymentStatus.FAILED,
                        f"capture_declined:{exc.code}",
                        failure_reason=exc.message,
                        failed_at=datetime.now(timezone.utc),
                    )
                    db.commit()
            raise
        except PaymentProviderError as exc:
            logger.error("capture failed payment_id=%s code=%s retryable=%s", payment.id, exc.code, exc.retryable)
            raise

        with self.session_factory() as db:
            current = db.get(Payment, payment.id)
            if current.status == PaymentStatus.CAPTURED.value:
                # A provider webhook confirmed the capture first.
                return Ok(current)
            applied = self._transition(
                db,
                current,
                PaymentStatus.CAPTURED,
                "provider_captured",
                captured_amount_cents=captured,
                captured_at=datetime.now(timezone.utc),
            )
            if not applied:
                db.rollback()
                raise ConcurrencyConflict(f"payment {payment.id} changed during capture")
            db.commit()
            return Ok(current)

    def cancel_authorization(self, payment_id: str, reason: str | None = None):
        """Void an uncaptured payment so the held funds go back to the payer."""

        loaded = self._load_charge(payment_id)
        if not loaded.ok:
            return loaded
        payment = loaded.value
        if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value):
            return self._reject(payment, PaymentStatus.CANCELLED)

        with provider_span("cancel", payment.id):
            self.provider.cancel(payment.provider_intent_id, idempotency_key=idempotency_key("cancel", payment.id))

        with self.session_factory() as db:
            current = db.get(Payment, payment.id)
            if current.status == PaymentStatus.CANCELLED.value:
                return Ok(current)
            if not self._transition(db, current, PaymentStatus.CANCELLED, reason or "authorization_cancelled"):
                db.rollback()
                raise ConcurrencyConflict(f"payment {payment.id} changed during cancellation")
            db.commit()
            return Ok(current)

    def payable_amount(self, payment: Payment) -> int:
        """Captured funds not refunded, minus the platform's retained share."""

        fee = payment.captured_amount_cents * self.platform_fee_bps // 10_000
        return payment.captured_amount_cents - payment.refunded_amount_cents - fee

    def transfer_to_recipient(self, payment_id: str, recipient_account_ref: str | None):
        """Pay the traveler out of a captured payment.

        Once the provider accepted the transfer a payout row is always
        written, even if a webhook moved the charge on in the meantime.
        """

        loaded = self._load_charge(payment_id)
        if not loaded.ok:
            return loaded
        payment = loaded.value
        if payment.status != PaymentStatus.CAPTURED.value:
            return self._reject(payment, PaymentStatus.TRANSFERRED)
        if not recipient_account_ref or not recipient_account_ref.startswith(PAYOUT_ACCOUNT_PREFIX):
            logger.warning("payout account missing payment_id=%s", payment.id)
            return PayoutAccountMissing(
                "recipient has no connected payout account",
                {"payment_id": payment.id, "recipient_account_ref": recipient_account_ref},
            )
        payable = self.payable_amount(payment)
        if payable <= 0:
            return ValidationError("nothing left to pay out", {"payable_cents": payable})

        key = idempotency_key("transfer", payment.id, recipient_account_ref, payable)
        with provider_span("transfer", payment.id):
            transfer_id = self.provider.transfer(
                payable,
                payment.currency,
                recipient_account_ref,
                payment.provider_intent_id,
                idempotency_key=key,
                metadata={"request_id": payment.request_id, "payment_id": payment.id},
            )

        with self.session_factory() as db:
            current = db.get(Payment, payment.id)
            now = datetime.now(timezone.utc)
            if not self._transition(db, current, PaymentStatus.TRANSFERRED, "payout_sent", transferred_at=now):
                db.refresh(current)
                # Money has left; the payout row is recorded whatever the charge moved to.
                logger.warning(
                    "payout sent while payment moved payment_id=%s status=%s transfer_id=%s",
                    current.id,
                    current.status,
                    transfer_id,
                )
            existing_row = db.execute(select(Payment.id).where(Payment.idempotency_key == key)).scalar_one_or_none()
            if existing_row is not None:
                db.commit()
                return Ok(current)
            payout = Payment(
                request_id=current.request_id,
                parent_payment_id=current.id,
                type=PaymentType.PAYOUT.value,
                provider_intent_id=current.provider_intent_id,
                provider_ref=transfer_id,
                payer_ref=recipient_account_ref,
                amount_cents=payable,
                captured_amount_cents=0,
                refunded_amount_cents=0,
                currency=current.currency,
                status=PaymentStatus.TRANSFERRED.value,
                state_version=0,
                idempotency_key=key,
                description=f"Payout for delivery request {current.request_id}",
                transferred_at=now,
            )
            db.add(payout)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent retry of the same payout recorded it first.
                db.rollback()
                return Ok(db.get(Payment, payment.id))
            logger.info("payout recorded payment_id=%s payout_id=%s amount=%s", current.id, payout.id, payable)
            return Ok(current)

    def refund(self, payment_id: str, amount_cents: int | None = None, reason: str | None = None):
        """Refund part or all of what is still refundable.

        The bound `refunded + amount <= captured` is checked before the
        provider is contacted; an over-refund is rejected outright.
        """

        loaded = self._load_charge(payment_id)
        if not loaded.ok:
            return loaded
        payment = loaded.value
        if payment.status not in {status.value for status in REFUNDABLE_PAYMENT_STATUSES}:
            return self._reject(payment, PaymentStatus.REFUNDED)
        remaining = payment.captured_amount_cents - payment.refunded_amount_cents
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            logger.warning(
                "refund rejected payment_id=%s requested=%s refundable=%s", payment.id, amount, remaining
            )
            return ValidationError(
                "refund amount exceeds the refundable balance",
                {"amount_cents": amount, "refundable_cents": remaining},
            )

        refunded_before = payment.refunded_amount_cents
        version_before = payment.state_version
        key = idempotency_key("refund", payment.id, refunded_before, amount)
        with provider_span("refund", payment.id):
            refund_id = self.provider.refund(payment.provider_intent_id, amount, idempotency_key=key, reason=reason)

        with self.session_factory() as db:
            current = db.get(Payment, payment.id)
            now = datetime.now(timezone.utc)
            applied = current.state_version == version_before and self._transition(
                db,
                current,
                PaymentStatus.REFUNDED,
                reason or "refund_requested",
                refunded_amount_cents=refunded_before + amount,
                refunded_at=now,
            )
            if not applied:
                db.rollback()
                current = db.get(Payment, payment.id)
                if current.refunded_amount_cents < refunded_before + amount:
                    raise ConcurrencyConflict(f"payment {payment.id} changed during refund")
                # A refund webhook or a concurrent identical refund already moved the totals.
                logger.info("refund totals already reconciled payment_id=%s", current.id)
            existing_row = db.execute(select(Payment.id).where(Payment.idempotency_key == key)).scalar_one_or_none()
            if existing_row is None:
                db.add(
                    Payment(
                        request_id=current.request_id,
                        parent_payment_id=current.id,
                        type=PaymentType.REFUND.value,
                        provider_intent_id=current.provider_intent_id,
                        provider_ref=refund_id,
                        payer_ref=current.payer_ref,
                        amount_cents=amount,
                        captured_amount_cents=0,
                        refunded_amount_cents=0,
                        currency=current.currency,
                        status=PaymentStatus.REFUNDED.value,
                        state_version=0,
                        idempotency_key=key,
                        description=reason or f"Refund for payment {current.id}",
                        refunded_at=now,
                    )
                )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if applied:
                    raise
                # The concurrent caller recorded the refund row first.
                return Ok(db.get(Payment, payment.id))
            return Ok(current)

    # -------------------------------------------------------- reconciliation

    def reconcile(
        self,
        intent_id: str,
        target: PaymentStatus,
        event_id: str,
        amount_cents: int | None = None,
        failure_reason: str | None = None,
    ):
        """Apply a provider-reported status if it moves the payment forward.

        Returns `Ok("applied")`, `Ok("noop")` when the payment is already at or
        past `target` (or the move is not legal from where it is), or
        `NotFoundError` when no charge carries `intent_id`. Never creates rows.
        """

        with self.session_factory() as db:
            payment = self.find_by_intent(db, intent_id)
            if payment is None:
                return not_found("payment", intent_id)
            entity_id_ctx.set(payment.id)
            current = PaymentStatus(payment.status)
            if current == target or not is_allowed(PAYMENT_TRANSITIONS, current, target):
                logger.info(
                    "webhook transition ignored payment_id=%s current=%s proposed=%s",
                    payment.id,
                    current.value,
                    target.value,
                )
                return Ok("noop")

            values = {}
            now = datetime.now(timezone.utc)
            if target == PaymentStatus.CAPTURED:
                values["captured_amount_cents"] = min(amount_cents or payment.amount_cents, payment.amount_cents)
                values["captured_at"] = now
            elif target == PaymentStatus.REFUNDED:
                reported = payment.captured_amount_cents if amount_cents is None else amount_cents
                values["refunded_amount_cents"] = max(
                    payment.refunded_amount_cents, min(reported, payment.captured_amount_cents)
                )
                values["refunded_at"] = now
            elif target == PaymentStatus.FAILED:
                values["failure_reason"] = failure_reason or "provider reported failure"
                values["failed_at"] = now

            if not self._transition(db, payment, target, "provider_webhook", event_id=event_id, **values):
                db.rollback()
                raise ConcurrencyConflict(f"payment {payment.id} changed while applying webhook {event_id}")
            db.commit()
            return Ok("applied")
