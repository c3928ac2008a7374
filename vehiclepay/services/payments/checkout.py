"""Checkout orchestration: turn a purchase request into one live ledger attempt.

Amounts are computed before any I/O. The gateway session (when the flow has a
card leg) is opened before anything is written, so a gateway failure leaves no
row behind. Supersession of the previous live attempt and the insert of the new
one commit together; the partial unique index on live attempts makes concurrent
checkouts for the same pair retry instead of both succeeding.
"""

import time
from datetime import datetime, timezone
from urllib.parse import urlencode
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from vehiclepay.common.config import settings
from vehiclepay.common.errors import (
    AuthorizationError,
    GatewayError,
    NotFoundError,
    PaymentError,
    StateConflictError,
    UpiNotConfiguredError,
    ValidationError,
)
from vehiclepay.common.logging import logger, transaction_id_ctx, vehicle_id_ctx
from vehiclepay.common.metrics import (
    checkout_failures_total,
    checkout_latency_seconds,
    checkout_requests_total,
    transactions_superseded_total,
)
from vehiclepay.common.state_machine import TransactionStatus
from vehiclepay.common.tracing import get_tracer
from vehiclepay.services.payments.amounts import AmountBreakdown, compute_amounts
from vehiclepay.services.payments.models import (
    BOOKING_TYPES,
    BookingMethod,
    PaymentType,
    PurchaseStage,
    Transaction,
    Vehicle,
    VehicleStatus,
)
from vehiclepay.services.payments.schemas import CheckoutRequest, CheckoutResponse

CONFIRMED_BOOKING_STATUSES = (
    TransactionStatus.PAYMENT_COMPLETED.value,
    TransactionStatus.COMPLETED.value,
)


def reference_code(kind: str, vehicle_id: str, now_ms: int | None = None) -> str:
    """Human-auditable manual payment reference, unique per vehicle and millisecond."""

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{kind}-{now_ms}-{vehicle_id[:8].upper()}"


def upi_deep_link(upi_id: str, payee_name: str, amount: int, note: str, reference: str, currency: str) -> str:
    query = urlencode(
        {"pa": upi_id, "pn": payee_name, "am": amount, "cu": currency.upper(), "tn": note, "tr": reference}
    )
    return f"upi://pay?{query}"


class CheckoutOrchestrator:
    def __init__(self, session_factory, gateway, engine, config=settings) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.engine = engine
        self.config = config

    def create_checkout(self, caller, request: CheckoutRequest) -> CheckoutResponse:
        payment_type = request.payment_type.value
        checkout_requests_total.labels(service=self.config.service_name, payment_type=payment_type).inc()
        vehicle_id_ctx.set(request.vehicle_id)
        with checkout_latency_seconds.labels(service=self.config.service_name).time():
            try:
                return self._create_checkout(caller, request)
            except PaymentError as exc:
                checkout_failures_total.labels(service=self.config.service_name, error_code=exc.code).inc()
                logger.warning(
                    "checkout_rejected vehicle_id=%s buyer_id=%s payment_type=%s code=%s reason=%s",
                    request.vehicle_id,
                    caller.user_id,
                    payment_type,
                    exc.code,
                    exc.message,
                )
                raise

    def _create_checkout(self, caller, request: CheckoutRequest) -> CheckoutResponse:
        payment_type = request.payment_type.value
        with self.session_factory() as db:
            vehicle = db.get(Vehicle, request.vehicle_id)
            if vehicle is None:
                raise NotFoundError("Vehicle not found")
            if request.previous_transaction_id:
                stage, owed, seller_id = self._check_balance(db, caller, vehicle, request)
            else:
                self._check_new_purchase(db, caller, vehicle, payment_type)
                stage = (
                    PurchaseStage.INITIAL_BOOKING.value
                    if payment_type in BOOKING_TYPES
                    else PurchaseStage.FULL_PAYMENT.value
                )
                owed, seller_id = vehicle.price, vehicle.seller_id
            vehicle_name = vehicle.display_name
            vehicle_price = vehicle.price

        booking_method = self._booking_method(payment_type, request.booking_method)
        amounts = compute_amounts(
            payment_type,
            stage,
            owed,
            booking_percent=self.config.booking_percent,
            booking_method=booking_method,
            upi_amount=request.upi_amount,
            cash_amount=request.cash_amount,
        )

        transaction_id = str(uuid4())
        transaction_id_ctx.set(transaction_id)
        reference = self._manual_reference(payment_type, stage, booking_method, request.vehicle_id)
        upi_link = None
        if amounts.upi_portion:
            if not self.config.upi_id:
                raise UpiNotConfiguredError()
            upi_link = upi_deep_link(
                self.config.upi_id,
                self.config.upi_name,
                amounts.upi_portion,
                f"Booking {vehicle_name}",
                reference,
                self.config.currency,
            )

        session = None
        if amounts.card > 0:
            session = self._open_session(
                transaction_id, request.vehicle_id, caller.user_id, seller_id, vehicle_name,
                vehicle_price, payment_type, stage, amounts,
            )

        row_values = dict(
            id=transaction_id,
            vehicle_id=request.vehicle_id,
            buyer_id=caller.user_id,
            seller_id=seller_id,
            previous_transaction_id=request.previous_transaction_id,
            vehicle_price=vehicle_price,
            total_amount=amounts.total,
            booking_amount=amounts.booking,
            remaining_amount=amounts.remaining,
            card_amount=amounts.card,
            currency=self.config.currency,
            payment_type=payment_type,
            purchase_stage=stage,
            booking_method=booking_method,
            manual_method=amounts.manual_method,
            status=TransactionStatus.PAYMENT_INITIATED.value,
            gateway_session_id=session.session_id if session else None,
            manual_reference=reference,
        )
        try:
            self._persist(row_values)
        except Exception:
            if session is not None:
                self._release_session(session.session_id)
            raise

        logger.info(
            "checkout_created transaction_id=%s vehicle_id=%s payment_type=%s purchase_stage=%s card_amount=%s",
            transaction_id,
            request.vehicle_id,
            payment_type,
            stage,
            amounts.card,
        )
        return CheckoutResponse(
            transaction_id=transaction_id,
            payment_type=payment_type,
            purchase_stage=stage,
            vehicle_name=vehicle_name,
            currency=self.config.currency,
            total_amount=amounts.total,
            booking_amount=amounts.booking,
            remaining_amount=amounts.remaining,
            card_amount=amounts.card,
            checkout_url=session.redirect_url if session else None,
            session_id=session.session_id if session else None,
            manual_reference=reference,
            manual_method=amounts.manual_method,
            upi_link=upi_link,
            upi_id=self.config.upi_id if upi_link else None,
            instructions=self._instructions(payment_type, stage, amounts),
        )

    # -- preconditions ---------------------------------------------------------

    def _check_new_purchase(self, db, caller, vehicle: Vehicle, payment_type: str) -> None:
        if vehicle.seller_id == caller.user_id:
            raise AuthorizationError("You cannot purchase your own vehicle")
        if vehicle.status != VehicleStatus.APPROVED.value:
            raise StateConflictError(
                "Vehicle is not available for purchase", details={"vehicle_status": vehicle.status}
            )

        holds = db.execute(
            select(Transaction.id, Transaction.buyer_id).where(
                Transaction.vehicle_id == vehicle.id,
                Transaction.purchase_stage == PurchaseStage.INITIAL_BOOKING.value,
                Transaction.status.in_(CONFIRMED_BOOKING_STATUSES),
                Transaction.settled_by_transaction_id.is_(None),
            )
        ).all()
        if any(buyer_id != caller.user_id for _, buyer_id in holds):
            raise StateConflictError("Vehicle is already booked by another buyer")
        if holds:
            # The holder may only pay the balance of the booking.
            raise StateConflictError(
                "You already have a booking for this vehicle. Pay the remaining balance instead.",
                details={"previous_transaction_id": holds[0].id, "payment_type": payment_type},
            )

    def _check_balance(self, db, caller, vehicle: Vehicle, request: CheckoutRequest) -> tuple[str, int, str]:
        if request.payment_type == PaymentType.ADVANCE_UPI:
            raise StateConflictError("An advance booking cannot pay the balance of an existing booking")
        booking = db.get(Transaction, request.previous_transaction_id)
        if booking is None or booking.vehicle_id != vehicle.id or booking.buyer_id != caller.user_id:
            raise NotFoundError("Booking transaction not found")
        if (
            booking.purchase_stage != PurchaseStage.INITIAL_BOOKING.value
            or booking.status not in CONFIRMED_BOOKING_STATUSES
            or booking.settled_by_transaction_id is not None
            or booking.remaining_amount <= 0
        ):
            raise StateConflictError(
                "no remaining balance to pay for this booking",
                details={"previous_transaction_id": booking.id, "status": booking.status},
            )
        return PurchaseStage.BALANCE_PAYMENT.value, booking.remaining_amount, booking.seller_id

    @staticmethod
    def _booking_method(payment_type: str, requested: BookingMethod | None) -> str | None:
        if payment_type == PaymentType.CASH_BOOKING.value:
            return BookingMethod.CASH.value
        if payment_type == PaymentType.ADVANCE_UPI.value:
            if requested is None:
                raise ValidationError("Booking method is required for advance bookings", field="booking_method")
            return requested.value
        return None

    def _manual_reference(self, payment_type: str, stage: str, booking_method: str | None, vehicle_id: str) -> str | None:
        if payment_type == PaymentType.ADVANCE_UPI.value:
            if booking_method == BookingMethod.CARD.value:
                return None
            return reference_code(f"{self.config.reference_prefix}-BK", vehicle_id)
        if payment_type == PaymentType.CASH_BOOKING.value:
            kind = "CASH-BAL" if stage == PurchaseStage.BALANCE_PAYMENT.value else "CASH"
            return reference_code(kind, vehicle_id)
        if payment_type == PaymentType.SPLIT_QR.value:
            return reference_code("SPLIT-MIX", vehicle_id)
        if payment_type == PaymentType.SPLIT_CASH.value:
            return reference_code("SPLIT-CASH", vehicle_id)
        return None

    # -- gateway ---------------------------------------------------------------

    def _open_session(
        self,
        transaction_id: str,
        vehicle_id: str,
        buyer_id: str,
        seller_id: str,
        vehicle_name: str,
        vehicle_price: int,
        payment_type: str,
        stage: str,
        amounts: AmountBreakdown,
    ):
        metadata = {
            "transaction_id": transaction_id,
            "vehicle_id": vehicle_id,
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "original_amount": str(vehicle_price),
            "payment_type": payment_type,
            "purchase_stage": stage,
        }
        if amounts.booking and payment_type not in BOOKING_TYPES:
            metadata["manual_amount"] = str(amounts.booking)

        if stage == PurchaseStage.INITIAL_BOOKING.value:
            description = f"Booking: {vehicle_name}"
        elif stage == PurchaseStage.BALANCE_PAYMENT.value:
            description = f"Balance payment: {vehicle_name}"
        else:
            description = vehicle_name

        frontend = self.config.frontend_url.rstrip("/")
        with get_tracer().start_as_current_span("gateway.create_checkout_session") as span:
            span.set_attribute("transaction.id", transaction_id)
            span.set_attribute("payment.card_amount", amounts.card)
            try:
                session = self.gateway.create_checkout_session(
                    amount_minor=amounts.card * 100,
                    currency=self.config.currency,
                    description=description,
                    success_url=(
                        f"{frontend}/buyer/purchases?success=true"
                        f"&session_id={{CHECKOUT_SESSION_ID}}&vehicleId={vehicle_id}"
                    ),
                    cancel_url=f"{frontend}/vehicles/{vehicle_id}?cancelled=true",
                    metadata=metadata,
                )
            except GatewayError:
                span.set_attribute("gateway.failed", True)
                raise
        logger.info("gateway_session_created transaction_id=%s session_id=%s", transaction_id, session.session_id)
        return session

    def _release_session(self, session_id: str) -> None:
        try:
            self.gateway.expire_session(session_id)
        except GatewayError as exc:
            logger.error("gateway_session_expire_failed session_id=%s error=%s", session_id, exc.message)
        else:
            logger.info("gateway_session_expired session_id=%s", session_id)

    # -- persistence -----------------------------------------------------------

    def _persist(self, row_values: dict) -> None:
        """Supersede the pair's live attempt and insert the new one atomically."""

        attempts = max(self.config.checkout_persist_attempts, 1)
        for attempt in range(1, attempts + 1):
            with self.session_factory() as db:
                try:
                    superseded = self.engine.supersede_live(db, row_values["vehicle_id"], row_values["buyer_id"])
                    db.add(Transaction(created_at=datetime.now(timezone.utc), **row_values))
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning(
                        "checkout_persist_conflict transaction_id=%s attempt=%s",
                        row_values["id"],
                        attempt,
                    )
                    continue
            if superseded:
                transactions_superseded_total.labels(service=self.config.service_name).inc(len(superseded))
                logger.info(
                    "checkout_superseded_previous transaction_id=%s superseded=%s",
                    row_values["id"],
                    superseded,
                )
            return
        raise StateConflictError("Another checkout for this vehicle is in progress, please retry")

    @staticmethod
    def _instructions(payment_type: str, stage: str, amounts: AmountBreakdown) -> str | None:
        if payment_type == PaymentType.CASH_BOOKING.value:
            if stage == PurchaseStage.BALANCE_PAYMENT.value:
                return "Please contact the seller to confirm balance payment in cash."
            return "Please contact the seller to confirm booking and arrange cash payment."
        if payment_type == PaymentType.ADVANCE_UPI.value:
            if amounts.upi_portion:
                return "Pay the booking amount with the UPI link, then confirm the booking."
            if amounts.cash_portion:
                return "Pay the booking amount to the seller in cash, then confirm the booking."
            return None
        if payment_type in (PaymentType.SPLIT_QR.value, PaymentType.SPLIT_CASH.value):
            return "Complete the manual payment and verify it before paying the remaining amount by card."
        return None
