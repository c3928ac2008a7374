"""Lookup and party checks shared by every mutating operation."""

from sqlalchemy import select

from vehiclepay.common.errors import AuthorizationError, NotFoundError
from vehiclepay.services.payments.models import Transaction


def load_transaction(db, transaction_id: str) -> Transaction:
    txn = db.get(Transaction, transaction_id)
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn


def load_by_session(db, session_id: str) -> Transaction:
    txn = db.execute(select(Transaction).where(Transaction.gateway_session_id == session_id)).scalar_one_or_none()
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn


def require_buyer(txn: Transaction, caller) -> None:
    if txn.buyer_id != caller.user_id:
        raise AuthorizationError("Only the buyer can perform this action")


def require_party(txn: Transaction, caller, allow_admin: bool = False) -> None:
    """Caller must be this transaction's buyer or seller."""

    if allow_admin and caller.is_admin:
        return
    if caller.user_id not in (txn.buyer_id, txn.seller_id):
        raise AuthorizationError("Only the buyer or seller of this transaction can perform this action")
