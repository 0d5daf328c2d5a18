"""HTTP surface for trips, delivery requests and payments.

Handlers only translate between JSON and the services; every business rule
lives in the services, which answer with typed outcomes mapped to status
codes by `unwrap`.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from errandpay.common.config import settings
from errandpay.common.db import get_session_factory
from errandpay.common.http import install_metrics_middleware, unwrap
from errandpay.common.logging import configure_logging, logger, trace_id_ctx
from errandpay.common.metrics import metrics_response
from errandpay.common.results import ConcurrencyConflict
from errandpay.common.startup import log_startup_config
from errandpay.common.tracing import instrument_app, setup_tracing
from errandpay.services.capacity.service import CapacityLedger
from errandpay.services.escrow.provider import PaymentProviderError, StripePaymentProvider
from errandpay.services.escrow.schemas import CaptureRequest, PaymentResponse, RefundRequest, TimelineEntry
from errandpay.services.escrow.service import EscrowService
from errandpay.services.marketplace.publisher import StatusEventRelay
from errandpay.services.requests.schemas import (
    AuthorizePaymentBody,
    CancelBody,
    CostBreakdown,
    DeliveryRequestCreate,
    DeliveryRequestResponse,
    PayoutBody,
    PurchaseBody,
)
from errandpay.services.requests.service import RequestLifecycleService
from errandpay.services.trips.schemas import TripCreateRequest, TripResponse, TripStatusUpdate
from errandpay.services.trips.service import TripService


class Services:
    """The service graph one app instance talks to."""

    def __init__(self, session_factory, provider, relay: StatusEventRelay | None = None) -> None:
        self.trips = TripService(session_factory)
        self.capacity = CapacityLedger(session_factory)
        self.escrow = EscrowService(session_factory, provider)
        self.requests = RequestLifecycleService(session_factory, self.escrow)
        self.relay = relay


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the status-event relay alongside the app."""

        relay_task = None
        if services.relay is not None:
            relay_task = asyncio.create_task(services.relay.outbox_publisher())
        yield
        if relay_task is not None:
            relay_task.cancel()
            await services.relay.close()

    app = FastAPI(title="errandpay marketplace", lifespan=lifespan)
    install_metrics_middleware(app, settings.service_name)

    @app.middleware("http")
    async def trace_middleware(request: Request, call_next):
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        return await call_next(request)

    @app.exception_handler(PaymentProviderError)
    async def provider_error_handler(_: Request, exc: PaymentProviderError):
        return JSONResponse(
            status_code=503 if exc.retryable else 502,
            content={"detail": {"code": exc.code, "message": exc.message, "retryable": exc.retryable}},
        )

    @app.exception_handler(ConcurrencyConflict)
    async def conflict_handler(_: Request, exc: ConcurrencyConflict):
        logger.warning("concurrent modification: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"detail": {"code": "CONCURRENT_MODIFICATION", "message": str(exc), "retryable": True}},
        )

    # ---------------------------------------------------------------- trips

    @app.post("/trips", response_model=TripResponse, status_code=201)
    def create_trip(req: TripCreateRequest):
        return unwrap(services.trips.create_trip(req.traveler_id, req.destination, req.capacity, req.departure_at))

    @app.get("/trips/{trip_id}", response_model=TripResponse)
    def get_trip(trip_id: str):
        return unwrap(services.trips.get_trip(trip_id))

    @app.post("/trips/{trip_id}/status", response_model=TripResponse)
    def update_trip_status(trip_id: str, req: TripStatusUpdate):
        return unwrap(services.trips.advance(trip_id, req.status))

    @app.get("/trips/{trip_id}/requests", response_model=list[DeliveryRequestResponse])
    def pending_requests(trip_id: str, limit: int = 10):
        """Pending requests for the traveler to choose from."""

        return unwrap(services.requests.list_pending_for_trip(trip_id, limit=min(max(limit, 1), 100)))

    # ------------------------------------------------------------- requests

    @app.post("/requests", response_model=DeliveryRequestResponse, status_code=201)
    def create_request(req: DeliveryRequestCreate):
        return unwrap(
            services.requests.create_request(
                req.trip_id,
                req.requester_id,
                [item.model_dump() for item in req.items],
                req.max_item_budget_cents,
                req.delivery_fee_cents,
                req.tip_cents,
            )
        )

    @app.get("/requests/{request_id}", response_model=DeliveryRequestResponse)
    def get_request(request_id: str):
        return unwrap(services.requests.get_request(request_id))

    @app.get("/requests/{request_id}/cost", response_model=CostBreakdown)
    def request_cost(request_id: str):
        return unwrap(services.requests.cost(request_id))

    @app.post("/requests/{request_id}/accept", response_model=DeliveryRequestResponse)
    def accept_request(request_id: str):
        return unwrap(services.requests.accept(request_id))

    @app.post("/requests/{request_id}/authorize", response_model=PaymentResponse)
    def authorize_request_payment(request_id: str, req: AuthorizePaymentBody):
        return unwrap(services.requests.authorize_payment(request_id, req.payer_ref))

    @app.post("/requests/{request_id}/purchase", response_model=DeliveryRequestResponse)
    def mark_purchased(request_id: str, req: PurchaseBody | None = None):
        req = req or PurchaseBody()
        return unwrap(
            services.requests.mark_purchased(request_id, req.capture_amount_cents, req.actual_item_prices_cents)
        )

    @app.post("/requests/{request_id}/deliver", response_model=DeliveryRequestResponse)
    def deliver(request_id: str):
        return unwrap(services.requests.deliver(request_id))

    @app.post("/requests/{request_id}/payout", response_model=PaymentResponse)
    def payout(request_id: str, req: PayoutBody):
        return unwrap(services.requests.payout(request_id, req.recipient_account_ref))

    @app.post("/requests/{request_id}/cancel", response_model=DeliveryRequestResponse)
    def cancel_request(request_id: str, req: CancelBody | None = None):
        return unwrap(services.requests.cancel(request_id, req.reason if req else None))

    # ------------------------------------------------------------- payments

    @app.get("/requests/{request_id}/payments", response_model=list[PaymentResponse])
    def request_payments(request_id: str):
        return services.escrow.list_payments(request_id)

    @app.get("/payments/{payment_id}", response_model=PaymentResponse)
    def get_payment(payment_id: str):
        return unwrap(services.escrow.get_payment(payment_id))

    @app.get("/payments/{payment_id}/timeline", response_model=list[TimelineEntry])
    def payment_timeline(payment_id: str):
        unwrap(services.escrow.get_payment(payment_id))
        return services.escrow.timeline(payment_id)

    @app.post("/payments/{payment_id}/capture", response_model=PaymentResponse)
    def capture_payment(payment_id: str, req: CaptureRequest | None = None):
        return unwrap(services.escrow.capture(payment_id, req.amount_cents if req else None))

    @app.post("/payments/{payment_id}/cancel", response_model=PaymentResponse)
    def cancel_payment(payment_id: str):
        return unwrap(services.escrow.cancel_authorization(payment_id))

    @app.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
    def refund_payment(payment_id: str, req: RefundRequest):
        return unwrap(services.escrow.refund(payment_id, req.amount_cents, req.reason))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "PROVIDER_API_KEY", "PLATFORM_FEE_BPS"],
)
_session_factory = get_session_factory()
app = create_app(Services(_session_factory, StripePaymentProvider(), StatusEventRelay(_session_factory)))
instrument_app(app)
