"""Reconciliation engine.

Matches gateway webhooks, client polls, peer confirmations and admin overrides
to ledger rows and applies each status transition exactly once. Every write is
a status-guarded UPDATE: when it matches zero rows another path already moved
the transaction and no side effect (vehicle write, outbox event) runs.
"""

from datetime import datetime, timedelta, timezone
from math import ceil

from sqlalchemy import func, select, update

from vehiclepay.common.errors import GatewayError, StateConflictError, ValidationError, WebhookSignatureError
from vehiclepay.common.logging import logger, transaction_id_ctx
from vehiclepay.common.metrics import (
    duplicate_events_skipped_total,
    payment_failure_total,
    payment_success_total,
    stale_transitions_skipped_total,
    webhook_events_total,
)
from vehiclepay.common.outbox import enqueue_event
from vehiclepay.common.state_machine import (
    SETTLED_STATUSES,
    DeliveryStatus,
    TransactionStatus,
    validate_transition,
)
from vehiclepay.services.payments.access import load_by_session, load_transaction, require_buyer
from vehiclepay.services.payments.amounts import amounts_balanced
from vehiclepay.services.payments.availability import VehicleAvailabilityGate
from vehiclepay.services.payments.models import (
    OutboxEvent,
    PurchaseStage,
    Transaction,
    TransactionTimeline,
    VerificationSource,
    WebhookInbox,
)
from vehiclepay.services.payments.schemas import ReconcileReport, VerifyResponse, WebhookAck

SUPERSEDED_REASON = "session expired - new checkout created"
EXPIRED_REASON = "checkout session expired"

ADMIN_MOVES = frozenset(
    {
        (TransactionStatus.PAYMENT_INITIATED.value, TransactionStatus.PAYMENT_COMPLETED.value),
        (TransactionStatus.PAYMENT_COMPLETED.value, TransactionStatus.COMPLETED.value),
        (TransactionStatus.PAYMENT_COMPLETED.value, TransactionStatus.REFUNDED.value),
    }
)


class ReconciliationEngine:
    """Owns transaction status progression and the vehicle availability gate."""

    def __init__(
        self,
        session_factory,
        gateway,
        service_name: str = "vehicle-payments",
        estimated_ready_days: int = 7,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.service_name = service_name
        self.estimated_ready_days = estimated_ready_days
        self._gate = VehicleAvailabilityGate(service_name)

    # -- transition primitives -------------------------------------------------

    def _transition(
        self,
        db,
        txn: Transaction,
        new_status: str,
        reason: str,
        event_id: str | None = None,
        **values,
    ) -> bool:
        """Apply one validated transition guarded on the row's current status.

        Returns False when the guarded update matched no row, i.e. a concurrent
        writer moved the transaction first.
        """

        from_status = txn.status
        current_version = txn.state_version
        validate_transition(from_status, new_status)
        result = db.execute(
            update(Transaction)
            .where(
                Transaction.id == txn.id,
                Transaction.status == from_status,
                Transaction.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            stale_transitions_skipped_total.labels(service=self.service_name, to_status=new_status).inc()
            logger.info(
                "transition_skipped transaction_id=%s expected=%s target=%s",
                txn.id,
                from_status,
                new_status,
            )
            return False

        for key, value in values.items():
            setattr(txn, key, value)
        txn.status = new_status
        txn.state_version = current_version + 1
        db.add(
            TransactionTimeline(
                transaction_id=txn.id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                event_id=event_id,
            )
        )
        logger.info(
            "transaction_transition transaction_id=%s from=%s to=%s reason=%s",
            txn.id,
            from_status,
            new_status,
            reason,
        )
        return True

    def _emit(self, db, topic: str, txn: Transaction, **extra) -> None:
        payload = {
            "transaction_id": txn.id,
            "vehicle_id": txn.vehicle_id,
            "buyer_id": txn.buyer_id,
            "seller_id": txn.seller_id,
            "status": txn.status,
            "purchase_stage": txn.purchase_stage,
            "remaining_amount": txn.remaining_amount,
            **extra,
        }
        enqueue_event(db, OutboxEvent, topic, "transaction", txn.id, payload)

    def complete(
        self,
        db,
        txn: Transaction,
        reason: str,
        verification_source: str,
        payment_reference: str | None = None,
        payment_method: str | None = None,
        manual_transaction_id: str | None = None,
        event_id: str | None = None,
    ) -> bool:
        """payment_initiated -> payment_completed plus its one-time effects.

        Full and balance payments settle the sale: remaining drops to zero, the
        paid-off booking is closed and the vehicle is sold. An initial booking
        keeps its remaining balance and only books the vehicle.
        """

        values: dict = {"verification_source": verification_source}
        if payment_reference:
            values["gateway_payment_id"] = payment_reference
        if payment_method:
            values["payment_method"] = payment_method
        if manual_transaction_id:
            values["manual_transaction_id"] = manual_transaction_id

        settles_sale = txn.purchase_stage != PurchaseStage.INITIAL_BOOKING.value
        if settles_sale:
            values["remaining_amount"] = 0
            values["delivery_status"] = DeliveryStatus.PROCESSING.value
            values["estimated_ready_date"] = datetime.now(timezone.utc) + timedelta(days=self.estimated_ready_days)

        if not self._transition(db, txn, TransactionStatus.PAYMENT_COMPLETED.value, reason, event_id, **values):
            return False

        if settles_sale:
            if txn.previous_transaction_id:
                self._settle_booking(db, txn)
            if self._gate.mark_sold(db, txn.vehicle_id):
                self._emit(db, "vehicles.sold", txn, verification_source=verification_source)
            else:
                self._flag_unavailable(db, txn, verification_source, payment_reference)
        elif self._gate.mark_booked(db, txn.vehicle_id):
            self._emit(db, "vehicles.booked", txn, verification_source=verification_source)
        else:
            self._flag_unavailable(db, txn, verification_source, payment_reference)

        self._emit(db, "payments.completed", txn, verification_source=verification_source)
        payment_success_total.labels(
            service=self.service_name,
            purchase_stage=txn.purchase_stage,
            verification_source=verification_source,
        ).inc()
        return True

    def _flag_unavailable(self, db, txn: Transaction, verification_source: str, payment_reference: str | None) -> None:
        """Money landed on a vehicle that another sale already took.

        The payment is recorded but nothing is scheduled for delivery; the
        capture is published for manual refund handling.
        """

        if txn.delivery_status is not None:
            db.execute(
                update(Transaction)
                .where(Transaction.id == txn.id)
                .values(delivery_status=None, estimated_ready_date=None)
                .execution_options(synchronize_session=False)
            )
            txn.delivery_status = None
            txn.estimated_ready_date = None
        logger.error(
            "payment_received_for_unavailable_vehicle transaction_id=%s vehicle_id=%s purchase_stage=%s",
            txn.id,
            txn.vehicle_id,
            txn.purchase_stage,
        )
        self._emit(
            db,
            "payments.orphaned_capture",
            txn,
            reason="vehicle_unavailable",
            verification_source=verification_source,
            payment_reference=payment_reference,
        )

    def _settle_booking(self, db, txn: Transaction) -> None:
        """Close the booking row whose balance `txn` just paid."""

        result = db.execute(
            update(Transaction)
            .where(
                Transaction.id == txn.previous_transaction_id,
                Transaction.settled_by_transaction_id.is_(None),
            )
            .values(
                remaining_amount=0,
                settled_by_transaction_id=txn.id,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount != 1:
            logger.warning(
                "booking_already_settled booking_id=%s balance_id=%s",
                txn.previous_transaction_id,
                txn.id,
            )

    def cancel(self, db, txn: Transaction, reason: str, event_id: str | None = None) -> bool:
        """Cancel a live attempt. Vehicle status is never touched."""

        if not self._transition(
            db, txn, TransactionStatus.CANCELLED.value, reason, event_id, cancel_reason=reason
        ):
            return False
        self._emit(db, "payments.cancelled", txn, reason=reason)
        return True

    def fail(
        self,
        db,
        txn: Transaction,
        error_code: str | None,
        error_description: str | None,
        reason: str,
        event_id: str | None = None,
    ) -> bool:
        """Record a payment failure. Vehicle status is never touched."""

        if not self._transition(
            db,
            txn,
            TransactionStatus.PAYMENT_FAILED.value,
            reason,
            event_id,
            error_code=error_code,
            error_description=error_description or "Payment failed",
        ):
            return False
        self._emit(db, "payments.failed", txn, error_code=error_code)
        payment_failure_total.labels(service=self.service_name).inc()
        return True

    def supersede_live(self, db, vehicle_id: str, buyer_id: str) -> list[str]:
        """Cancel every live checkout for the pair before a new one is inserted."""

        live = db.execute(
            select(Transaction).where(
                Transaction.vehicle_id == vehicle_id,
                Transaction.buyer_id == buyer_id,
                Transaction.status == TransactionStatus.PAYMENT_INITIATED.value,
            )
        ).scalars().all()
        cancelled = []
        for txn in live:
            if self.cancel(db, txn, SUPERSEDED_REASON):
                cancelled.append(txn.id)
        return cancelled

    # -- gateway webhooks ------------------------------------------------------

    def handle_gateway_webhook(self, raw_body: bytes, signature: str | None) -> WebhookAck:
        """Verify, deduplicate and apply one gateway event.

        Signature failures and events that cannot be correlated are logged and
        acknowledged: the gateway's retry cannot fix them. Unexpected errors
        propagate so the gateway redelivers.
        """

        try:
            event = self.gateway.parse_webhook(raw_body, signature)
        except WebhookSignatureError as exc:
            logger.warning("webhook_rejected reason=%s", exc.message)
            webhook_events_total.labels(service=self.service_name, event_type="unknown", outcome="invalid_signature").inc()
            return WebhookAck(received=False, outcome="invalid_signature")

        logger.info("webhook_received event_type=%s event_id=%s", event.event_type, event.event_id)
        with self.session_factory() as db:
            seen = db.get(WebhookInbox, (event.event_id, self.service_name))
            if seen is not None:
                logger.info("duplicate webhook skipped event_type=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, event_type=event.event_type).inc()
                return WebhookAck(received=True, event_type=event.event_type, outcome="duplicate")

            if event.event_type == "checkout.session.completed":
                outcome = self._on_session_completed(db, event.data, event.event_id)
            elif event.event_type == "checkout.session.expired":
                outcome = self._on_session_expired(db, event.data, event.event_id)
            elif event.event_type == "payment_intent.payment_failed":
                outcome = self._on_payment_failed(db, event.data, event.event_id)
            else:
                logger.info("webhook_unhandled event_type=%s", event.event_type)
                outcome = "unhandled"

            db.add(WebhookInbox(event_id=event.event_id, consumed_by_service=self.service_name, event_type=event.event_type))
            db.commit()

        webhook_events_total.labels(service=self.service_name, event_type=event.event_type, outcome=outcome).inc()
        return WebhookAck(received=True, event_type=event.event_type, outcome=outcome)

    def _find_by_session(self, db, session_id: str | None) -> Transaction | None:
        if not session_id:
            return None
        return db.execute(
            select(Transaction).where(Transaction.gateway_session_id == session_id)
        ).scalar_one_or_none()

    def _source_for(self, txn: Transaction) -> str:
        if txn.has_manual_leg:
            return VerificationSource.PEER_ATTESTED.value
        return VerificationSource.GATEWAY_CONFIRMED.value

    def _on_session_completed(self, db, session: dict, event_id: str) -> str:
        txn = self._find_by_session(db, session.get("id"))
        if txn is None:
            logger.error("webhook_unknown_session session_id=%s", session.get("id"))
            return "unknown_session"
        transaction_id_ctx.set(txn.id)
        if txn.status in SETTLED_STATUSES:
            return "already_applied"
        if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
            # Money arrived for an attempt that was already cancelled or failed.
            logger.error(
                "payment_received_for_closed_transaction transaction_id=%s status=%s session_id=%s",
                txn.id,
                txn.status,
                txn.gateway_session_id,
            )
            self._emit(db, "payments.orphaned_capture", txn, payment_reference=session.get("payment_intent"))
            return "orphaned_capture"
        applied = self.complete(
            db,
            txn,
            reason="gateway_session_completed",
            verification_source=self._source_for(txn),
            payment_reference=session.get("payment_intent"),
            payment_method="stripe",
            event_id=event_id,
        )
        return "applied" if applied else "already_applied"

    def _on_session_expired(self, db, session: dict, event_id: str) -> str:
        txn = self._find_by_session(db, session.get("id"))
        if txn is None:
            logger.error("webhook_unknown_session session_id=%s", session.get("id"))
            return "unknown_session"
        if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
            return "ignored"
        return "applied" if self.cancel(db, txn, EXPIRED_REASON, event_id) else "already_applied"

    def _on_payment_failed(self, db, intent: dict, event_id: str) -> str:
        metadata = intent.get("metadata") or {}
        txn = None
        if metadata.get("transaction_id"):
            txn = db.get(Transaction, metadata["transaction_id"])
        if txn is None and intent.get("id"):
            txn = db.execute(
                select(Transaction).where(Transaction.gateway_payment_id == intent["id"])
            ).scalar_one_or_none()
        if txn is None:
            logger.error("webhook_unknown_payment payment_intent=%s", intent.get("id"))
            return "unknown_transaction"
        if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
            return "ignored"
        error = intent.get("last_payment_error") or {}
        applied = self.fail(
            db,
            txn,
            error.get("code"),
            error.get("message") or "Payment failed",
            reason="gateway_payment_failed",
            event_id=event_id,
        )
        return "applied" if applied else "already_applied"

    # -- client-triggered paths ------------------------------------------------

    def poll_verify(self, caller, transaction_id: str | None = None, session_id: str | None = None) -> VerifyResponse:
        """Ask the gateway directly; the compensating path for lost webhooks."""

        if not transaction_id and not session_id:
            raise ValidationError("Transaction ID or Session ID is required", field="transaction_id")

        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id) if transaction_id else load_by_session(db, session_id)
            require_buyer(txn, caller)
            if txn.status in SETTLED_STATUSES:
                return VerifyResponse(verified=True, transaction_id=txn.id, status=txn.status, message="Payment already verified")
            if not txn.gateway_session_id:
                raise StateConflictError("Transaction has no card checkout to verify")
            if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
                return VerifyResponse(verified=False, transaction_id=txn.id, status=txn.status, message="Transaction is closed")
            txn_id, gateway_session_id = txn.id, txn.gateway_session_id

        try:
            session_status = self.gateway.retrieve_session(gateway_session_id)
        except GatewayError as exc:
            logger.warning("poll_verify_gateway_unavailable transaction_id=%s error=%s", txn_id, exc.message)
            return VerifyResponse(
                verified=False,
                transaction_id=txn_id,
                status=TransactionStatus.PAYMENT_INITIATED.value,
                message="Could not verify payment status",
            )
        return self._apply_session_status(txn_id, session_status, reason_prefix="poll")

    def _apply_session_status(self, transaction_id: str, session_status, reason_prefix: str) -> VerifyResponse:
        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            if session_status.payment_status == "paid":
                if txn.status == TransactionStatus.PAYMENT_INITIATED.value:
                    self.complete(
                        db,
                        txn,
                        reason=f"{reason_prefix}_verified",
                        verification_source=self._source_for(txn),
                        payment_reference=session_status.payment_reference,
                        payment_method="stripe",
                    )
                    db.commit()
                    db.refresh(txn)
                verified = txn.status in SETTLED_STATUSES
                message = "Payment verified successfully" if verified else "Transaction is closed"
                return VerifyResponse(verified=verified, transaction_id=txn.id, status=txn.status, message=message)
            if session_status.payment_status == "expired":
                if txn.status == TransactionStatus.PAYMENT_INITIATED.value:
                    self.cancel(db, txn, EXPIRED_REASON)
                    db.commit()
                    db.refresh(txn)
                return VerifyResponse(verified=False, transaction_id=txn.id, status=txn.status, message="Checkout session expired")
            return VerifyResponse(verified=False, transaction_id=txn.id, status=txn.status, message="Payment is still pending")

    def record_client_failure(
        self, caller, transaction_id: str, error_code: str | None, error_description: str | None
    ) -> Transaction:
        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            require_buyer(txn, caller)
            if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
                raise StateConflictError(f"Cannot record a failure for a {txn.status} transaction")
            if not self.fail(db, txn, error_code, error_description, reason="client_reported_failure"):
                raise StateConflictError("Transaction changed concurrently")
            db.commit()
            return txn

    # -- admin -----------------------------------------------------------------

    def admin_update_status(self, transaction_id: str, status: str) -> Transaction:
        """Manual override used by the back office.

        Verifying a live payment applies the normal completion effects;
        `completed` finalizes bookkeeping and `refunded` records a refund. Vehicle
        availability is never moved backwards.
        """

        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            if (txn.status, status) not in ADMIN_MOVES:
                raise StateConflictError(
                    f"Admin cannot move a transaction from {txn.status} to {status}",
                    details={"current": txn.status, "requested": status},
                )

            if status == TransactionStatus.PAYMENT_COMPLETED.value:
                applied = self.complete(
                    db, txn, reason="admin_verified", verification_source=VerificationSource.ADMIN_VERIFIED.value
                )
            else:
                try:
                    applied = self._transition(db, txn, status, reason=f"admin_{status}")
                except ValueError as exc:
                    raise StateConflictError(str(exc)) from exc
                if applied:
                    self._emit(db, f"payments.{status}", txn)
            if not applied:
                raise StateConflictError("Transaction changed concurrently")
            db.commit()
            return txn

    def list_transactions(self, status: str | None = None, page: int = 1, limit: int = 20) -> tuple[list[Transaction], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        with self.session_factory() as db:
            query = select(Transaction)
            count_query = select(func.count()).select_from(Transaction)
            if status:
                query = query.where(Transaction.status == status)
                count_query = count_query.where(Transaction.status == status)
            rows = db.execute(
                query.order_by(Transaction.created_at.desc()).limit(limit).offset((page - 1) * limit)
            ).scalars().all()
            total = db.execute(count_query).scalar_one()
        return list(rows), total

    @staticmethod
    def total_pages(total: int, limit: int) -> int:
        return ceil(total / limit) if limit else 0

    def reconcile_stale(self, older_than_minutes: int, limit: int = 100) -> ReconcileReport:
        """Poll the gateway for card checkouts that never heard back."""

        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        with self.session_factory() as db:
            candidates = db.execute(
                select(Transaction.id, Transaction.gateway_session_id)
                .where(
                    Transaction.status == TransactionStatus.PAYMENT_INITIATED.value,
                    Transaction.gateway_session_id.is_not(None),
                    Transaction.created_at <= cutoff,
                )
                .order_by(Transaction.created_at)
                .limit(limit)
            ).all()

        report = ReconcileReport()
        for txn_id, gateway_session_id in candidates:
            report.checked += 1
            try:
                session_status = self.gateway.retrieve_session(gateway_session_id)
            except GatewayError as exc:
                logger.warning("reconcile_gateway_error transaction_id=%s error=%s", txn_id, exc.message)
                report.errors += 1
                continue
            result = self._apply_session_status(txn_id, session_status, reason_prefix="sweep")
            if result.verified:
                report.completed += 1
            elif result.status == TransactionStatus.CANCELLED.value:
                report.cancelled += 1
            else:
                report.pending += 1
        logger.info("reconcile_stale_finished report=%s", report.model_dump())
        return report

    def audit_ledger(self, limit: int = 1000) -> list[dict]:
        """Return rows whose amounts break the ledger invariant."""

        with self.session_factory() as db:
            rows = db.execute(
                select(Transaction).order_by(Transaction.created_at.desc()).limit(limit)
            ).scalars().all()
            return [
                {
                    "transaction_id": txn.id,
                    "status": txn.status,
                    "purchase_stage": txn.purchase_stage,
                    "total_amount": txn.total_amount,
                    "booking_amount": txn.booking_amount,
                    "remaining_amount": txn.remaining_amount,
                }
                for txn in rows
                if not amounts_balanced(txn)
            ]
