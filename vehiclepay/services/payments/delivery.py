"""Post-sale logistics on a settled transaction."""

from datetime import datetime, timezone

from sqlalchemy import update

from vehiclepay.common.errors import AuthorizationError, StateConflictError, ValidationError
from vehiclepay.common.logging import logger
from vehiclepay.common.outbox import enqueue_event
from vehiclepay.common.state_machine import (
    DELIVERY_ORDER,
    DeliveryStatus,
    TransactionStatus,
    validate_delivery_transition,
)
from vehiclepay.services.payments.access import load_transaction, require_buyer
from vehiclepay.services.payments.models import OutboxEvent, Transaction

DELIVERABLE_STATUSES = (TransactionStatus.PAYMENT_COMPLETED.value, TransactionStatus.COMPLETED.value)


class DeliveryTracker:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _guarded_update(db, txn: Transaction, expected: str, **values) -> None:
        """Write delivery fields only if the step is still the one we read."""

        result = db.execute(
            update(Transaction)
            .where(Transaction.id == txn.id, Transaction.delivery_status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("delivery_update_skipped transaction_id=%s expected=%s", txn.id, expected)
            raise StateConflictError(
                "Delivery status changed concurrently, please reload",
                details={"expected": expected},
            )
        for key, value in values.items():
            setattr(txn, key, value)

    def update_delivery_status(
        self,
        caller,
        transaction_id: str,
        status: str,
        estimated_ready_date: datetime | None = None,
        notes: str | None = None,
    ) -> Transaction:
        """Seller (or admin) moves delivery forward; only the buyer marks collection."""

        if status not in DELIVERY_ORDER:
            raise ValidationError(f"Unknown delivery status: {status}", field="delivery_status")
        if status == DeliveryStatus.COLLECTED.value:
            raise ValidationError("Only the buyer can confirm collection", field="delivery_status")
        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            if txn.seller_id != caller.user_id and not caller.is_admin:
                raise AuthorizationError("Only the seller can update delivery status")
            if txn.status not in DELIVERABLE_STATUSES or txn.remaining_amount != 0:
                raise StateConflictError("Delivery can only be tracked once the vehicle is fully paid")
            if txn.delivery_status is None:
                raise StateConflictError("No delivery is scheduled for this transaction")
            try:
                validate_delivery_transition(txn.delivery_status, status)
            except ValueError as exc:
                raise StateConflictError(str(exc)) from exc

            previous = txn.delivery_status
            values = {"delivery_status": status, "updated_at": datetime.now(timezone.utc)}
            if estimated_ready_date is not None:
                values["estimated_ready_date"] = estimated_ready_date
            if notes is not None:
                values["delivery_notes"] = notes
            self._guarded_update(db, txn, previous, **values)
            enqueue_event(
                db,
                OutboxEvent,
                "deliveries.updated",
                "transaction",
                txn.id,
                {"transaction_id": txn.id, "buyer_id": txn.buyer_id, "from": previous, "to": status},
            )
            db.commit()
            logger.info("delivery_updated transaction_id=%s from=%s to=%s", txn.id, previous, status)
            return txn

    def confirm_collection(self, caller, transaction_id: str) -> Transaction:
        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            require_buyer(txn, caller)
            if txn.delivery_status != DeliveryStatus.READY_FOR_COLLECTION.value:
                raise StateConflictError("Vehicle is not ready for collection yet")
            collected_at = datetime.now(timezone.utc)
            self._guarded_update(
                db,
                txn,
                DeliveryStatus.READY_FOR_COLLECTION.value,
                delivery_status=DeliveryStatus.COLLECTED.value,
                collected_at=collected_at,
                updated_at=collected_at,
            )
            enqueue_event(
                db,
                OutboxEvent,
                "deliveries.collected",
                "transaction",
                txn.id,
                {"transaction_id": txn.id, "seller_id": txn.seller_id},
            )
            db.commit()
            logger.info("vehicle_collected transaction_id=%s", txn.id)
            return txn
