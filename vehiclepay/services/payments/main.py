"""HTTP surface for vehicle purchase payments.

Routes only map requests onto `PaymentsService`; the caller identity arrives in
trusted headers set by the upstream auth layer.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from vehiclepay.common.config import settings
from vehiclepay.common.db import SessionLocal
from vehiclepay.common.errors import AuthorizationError, PaymentError
from vehiclepay.common.logging import configure_logging, logger, trace_id_ctx
from vehiclepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from vehiclepay.common.startup import log_startup_config
from vehiclepay.common.tracing import instrument_app, setup_tracing
from vehiclepay.services.payments.gateway import StripeGateway
from vehiclepay.services.payments.schemas import (
    AdminStatusUpdate,
    Caller,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmBookingRequest,
    DeliveryUpdateRequest,
    FailureReport,
    PaymentConfigResponse,
    ReconcileReport,
    TransactionPage,
    TransactionResponse,
    VerifyManualRequest,
    VerifyRequest,
    VerifyResponse,
    WebhookAck,
)
from vehiclepay.services.payments.service import PaymentsService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "currency",
        "upi_id",
        "booking_percent",
        "outbox_publisher_enabled",
    ],
)
service = PaymentsService(
    SessionLocal,
    StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret, settings.gateway_timeout_seconds),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = None
    if settings.outbox_publisher_enabled:
        publisher_task = asyncio.create_task(service.outbox_publisher())
    yield
    if publisher_task is not None:
        publisher_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Vehicle Marketplace Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(PaymentError)
async def payment_error_handler(_: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_service() -> PaymentsService:
    return service


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default="buyer"),
) -> Caller:
    """Identity forwarded by the auth layer."""

    if not x_user_id:
        raise HTTPException(status_code=401, detail="authentication required")
    return Caller(user_id=x_user_id, role=x_user_role)


def get_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError("Admin access required")
    return caller


@app.post("/payments/create-checkout", response_model=CheckoutResponse)
def create_checkout(
    req: CheckoutRequest,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    """Start a purchase attempt; returns a redirect, a manual payload, or both."""

    return svc.checkout.create_checkout(caller, req)


@app.post("/payments/verify-manual", response_model=TransactionResponse)
def verify_manual(
    req: VerifyManualRequest,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.manual.verify_manual(caller, req.transaction_id, req.manual_transaction_id)


@app.post("/payments/confirm-booking", response_model=TransactionResponse)
def confirm_booking(
    req: ConfirmBookingRequest,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.manual.confirm_booking(caller, req.transaction_id, req.external_reference)


@app.post("/payments/verify", response_model=VerifyResponse)
def verify_payment(
    req: VerifyRequest,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    """Poll the gateway for a card checkout the webhook has not settled yet."""

    return svc.reconciliation.poll_verify(caller, req.transaction_id, req.session_id)


@app.post("/payments/failed", response_model=TransactionResponse)
def payment_failed(
    req: FailureReport,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.reconciliation.record_client_failure(caller, req.transaction_id, req.error_code, req.error_description)


@app.post("/payments/webhook", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    svc: PaymentsService = Depends(get_service),
):
    """Gateway callback. Always acknowledged unless processing hit an unexpected error."""

    raw_body = await request.body()
    return await run_in_threadpool(svc.reconciliation.handle_gateway_webhook, raw_body, stripe_signature)


@app.get("/payments/config", response_model=PaymentConfigResponse)
def payment_config(svc: PaymentsService = Depends(get_service)):
    return svc.payment_config()


@app.get("/payments/my-purchases", response_model=list[TransactionResponse])
def my_purchases(caller: Caller = Depends(get_caller), svc: PaymentsService = Depends(get_service)):
    return svc.list_purchases(caller)


@app.get("/payments/my-sales", response_model=list[TransactionResponse])
def my_sales(caller: Caller = Depends(get_caller), svc: PaymentsService = Depends(get_service)):
    return svc.list_sales(caller)


@app.get("/payments/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.get_transaction(caller, transaction_id)


@app.put("/payments/{transaction_id}/delivery-status", response_model=TransactionResponse)
def update_delivery_status(
    transaction_id: str,
    req: DeliveryUpdateRequest,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.delivery.update_delivery_status(
        caller, transaction_id, req.delivery_status, req.estimated_ready_date, req.delivery_notes
    )


@app.post("/payments/{transaction_id}/confirm-collection", response_model=TransactionResponse)
def confirm_collection(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    svc: PaymentsService = Depends(get_service),
):
    return svc.delivery.confirm_collection(caller, transaction_id)


@app.get("/admin/payments", response_model=TransactionPage)
def admin_list_payments(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: Caller = Depends(get_admin),
    svc: PaymentsService = Depends(get_service),
):
    rows, total = svc.reconciliation.list_transactions(status, page, limit)
    return TransactionPage(
        transactions=[TransactionResponse.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
        total_pages=svc.reconciliation.total_pages(total, limit),
    )


@app.put("/admin/payments/{transaction_id}/status", response_model=TransactionResponse)
def admin_update_status(
    transaction_id: str,
    req: AdminStatusUpdate,
    admin: Caller = Depends(get_admin),
    svc: PaymentsService = Depends(get_service),
):
    logger.info("admin_status_override transaction_id=%s status=%s admin_id=%s", transaction_id, req.status, admin.user_id)
    return svc.reconciliation.admin_update_status(transaction_id, req.status)


@app.post("/admin/payments/reconcile-stale", response_model=ReconcileReport)
def admin_reconcile_stale(
    older_than_minutes: int | None = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
    _: Caller = Depends(get_admin),
    svc: PaymentsService = Depends(get_service),
):
    """Sweep card checkouts whose webhook never arrived."""

    minutes = older_than_minutes or settings.stale_checkout_minutes
    return svc.reconciliation.reconcile_stale(minutes, limit)


@app.get("/admin/payments/audit")
def admin_audit(
    limit: int = Query(default=1000, ge=1, le=10000),
    _: Caller = Depends(get_admin),
    svc: PaymentsService = Depends(get_service),
):
    violations = svc.reconciliation.audit_ledger(limit)
    return {"checked_limit": limit, "violations": violations, "ok": not violations}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
