"""Buyer and seller attestation of payments collected outside the card gateway.

Nothing here is verified independently: a split payment's manual leg is only
recorded, and a UPI/cash booking is completed on the word of either party. Rows
finished this way carry `verification_source = peer_attested`.
"""

from datetime import datetime, timezone

from vehiclepay.common.errors import StateConflictError
from vehiclepay.common.logging import logger, transaction_id_ctx
from vehiclepay.common.state_machine import SETTLED_STATUSES, TransactionStatus
from vehiclepay.services.payments.access import load_transaction, require_buyer, require_party
from vehiclepay.services.payments.models import (
    BOOKING_TYPES,
    SPLIT_TYPES,
    BookingMethod,
    Transaction,
    VerificationSource,
)


def infer_manual_method(txn: Transaction) -> str:
    """Manual channel implied by the amounts recorded at checkout."""

    if txn.manual_method:
        return txn.manual_method
    return "upi" if txn.payment_type == "split_qr" else "cash"


class ManualPaymentTracker:
    def __init__(self, session_factory, engine) -> None:
        self.session_factory = session_factory
        self.engine = engine

    def verify_manual(self, caller, transaction_id: str, manual_transaction_id: str | None = None) -> Transaction:
        """Record the buyer's claim that a split payment's manual leg was paid.

        Status is left alone and repeating the call overwrites the recorded
        reference. The card leg's checkout URL is gated on this only by the
        client flow.
        """

        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            transaction_id_ctx.set(txn.id)
            require_buyer(txn, caller)
            if txn.payment_type not in SPLIT_TYPES:
                raise StateConflictError("Manual verification is only available for split payments")
            if txn.status not in (
                TransactionStatus.PAYMENT_INITIATED.value,
                TransactionStatus.PAYMENT_COMPLETED.value,
            ):
                raise StateConflictError(f"Cannot verify a manual payment on a {txn.status} transaction")

            txn.manual_transaction_id = manual_transaction_id or txn.manual_transaction_id or txn.manual_reference
            txn.manual_method = infer_manual_method(txn)
            txn.manual_verified_at = datetime.now(timezone.utc)
            db.commit()
            logger.info(
                "manual_leg_recorded transaction_id=%s manual_method=%s",
                txn.id,
                txn.manual_method,
            )
            return txn

    def confirm_booking(self, caller, transaction_id: str, external_reference: str | None = None) -> Transaction:
        """Complete a UPI/cash booking or balance on the word of buyer or seller."""

        with self.session_factory() as db:
            txn = load_transaction(db, transaction_id)
            transaction_id_ctx.set(txn.id)
            require_party(txn, caller)
            if txn.payment_type not in BOOKING_TYPES:
                raise StateConflictError("Only booking payments can be confirmed manually")
            if txn.booking_method == BookingMethod.CARD.value:
                raise StateConflictError("Card bookings are confirmed by the payment gateway")
            if txn.status in SETTLED_STATUSES:
                logger.info("confirm_booking_noop transaction_id=%s status=%s", txn.id, txn.status)
                return txn
            if txn.status != TransactionStatus.PAYMENT_INITIATED.value:
                raise StateConflictError(f"Cannot confirm a {txn.status} transaction")

            applied = self.engine.complete(
                db,
                txn,
                reason=f"confirmed_by_{'seller' if caller.user_id == txn.seller_id else 'buyer'}",
                verification_source=VerificationSource.PEER_ATTESTED.value,
                payment_method=txn.booking_method,
                manual_transaction_id=external_reference or txn.manual_reference,
            )
            db.commit()
            if not applied:
                db.refresh(txn)
                if txn.status not in SETTLED_STATUSES:
                    raise StateConflictError(f"Cannot confirm a {txn.status} transaction")
            return txn
