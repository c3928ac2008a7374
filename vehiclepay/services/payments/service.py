"""Payments service facade.

Wires the checkout orchestrator, manual payment tracker, reconciliation engine
and delivery tracker over one session factory and gateway, serves the read
operations, and runs the outbox publisher.
"""

import asyncio

from sqlalchemy import select

from vehiclepay.common.config import settings
from vehiclepay.common.events import EventEnvelope, KafkaBus
from vehiclepay.common.logging import logger
from vehiclepay.common.outbox import claim_outbox_batch, mark_outbox_sent, requeue_outbox_event
from vehiclepay.services.payments.access import load_transaction, require_party
from vehiclepay.services.payments.checkout import CheckoutOrchestrator
from vehiclepay.services.payments.delivery import DeliveryTracker
from vehiclepay.services.payments.manual import ManualPaymentTracker
from vehiclepay.services.payments.models import OutboxEvent, Transaction
from vehiclepay.services.payments.reconciliation import ReconciliationEngine
from vehiclepay.services.payments.schemas import PaymentConfigResponse


class PaymentsService:
    def __init__(self, session_factory, gateway, config=settings) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config
        self.kafka = KafkaBus()
        self.reconciliation = ReconciliationEngine(
            session_factory,
            gateway,
            service_name=config.service_name,
            estimated_ready_days=config.estimated_ready_days,
        )
        self.checkout = CheckoutOrchestrator(session_factory, gateway, self.reconciliation, config)
        self.manual = ManualPaymentTracker(session_factory, self.reconciliation)
        self.delivery = DeliveryTracker(session_factory)

    def get_transaction(self, caller, transaction_id: str) -> Transaction:
        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            require_party(txn, caller, allow_admin=True)
            return txn

    def list_purchases(self, caller) -> list[Transaction]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Transaction)
                    .where(Transaction.buyer_id == caller.user_id)
                    .order_by(Transaction.created_at.desc())
                ).scalars()
            )

    def list_sales(self, caller) -> list[Transaction]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Transaction)
                    .where(Transaction.seller_id == caller.user_id)
                    .order_by(Transaction.created_at.desc())
                ).scalars()
            )

    def payment_config(self) -> PaymentConfigResponse:
        return PaymentConfigResponse(
            upi_id=self.config.upi_id,
            upi_name=self.config.upi_name,
            currency=self.config.currency,
            booking_percent=self.config.booking_percent,
        )

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        db.commit()
                except Exception as exc:
                    logger.exception("outbox publish failed: %s", exc)
                    with self.session_factory() as db:
                        requeue_outbox_event(db, OutboxEvent, row["id"])
                        db.commit()
            await asyncio.sleep(0.5)
