"""Booking, token and split amount arithmetic.

Pure functions over integer currency units (no sub-units). Percentages round
half up.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from vehiclepay.common.errors import ValidationError
from vehiclepay.common.state_machine import SETTLED_STATUSES
from vehiclepay.services.payments.models import BookingMethod, PaymentType, PurchaseStage


@dataclass(frozen=True)
class AmountBreakdown:
    """How one purchase attempt divides the amount it settles."""

    total: int
    booking: int
    remaining: int
    card: int
    upi_portion: int = 0
    cash_portion: int = 0

    @property
    def manual_method(self) -> str | None:
        if self.upi_portion and self.cash_portion:
            return "upi+cash"
        if self.upi_portion:
            return "upi"
        if self.cash_portion:
            return "cash"
        return None


def percentage_of(amount: int, percent: int) -> int:
    value = Decimal(amount) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def full_card(owed: int) -> AmountBreakdown:
    return AmountBreakdown(total=owed, booking=0, remaining=owed, card=owed)


def booking(price: int, percent: int, method: str) -> AmountBreakdown:
    """Token/advance booking: a percentage of the price reserves the vehicle."""

    token = percentage_of(price, percent)
    card = token if method == BookingMethod.CARD.value else 0
    return AmountBreakdown(
        total=price,
        booking=token,
        remaining=price - token,
        card=card,
        upi_portion=token if method == BookingMethod.UPI.value else 0,
        cash_portion=token if method == BookingMethod.CASH.value else 0,
    )


def cash_balance(owed: int) -> AmountBreakdown:
    return AmountBreakdown(total=owed, booking=0, remaining=owed, card=0, cash_portion=owed)


def split(payment_type: str, owed: int, upi_amount: int | None, cash_amount: int | None) -> AmountBreakdown:
    """Manual leg (UPI and/or cash) now, card for the residual.

    `split_cash` ignores any UPI portion. The manual total must be strictly
    between zero and the amount owed, otherwise it is not a split.
    """

    upi_portion = (upi_amount or 0) if payment_type == PaymentType.SPLIT_QR.value else 0
    cash_portion = cash_amount or 0
    if upi_portion < 0:
        raise ValidationError("UPI amount cannot be negative", field="upi_amount")
    if cash_portion < 0:
        raise ValidationError("Cash amount cannot be negative", field="cash_amount")

    manual = upi_portion + cash_portion
    field = "upi_amount" if payment_type == PaymentType.SPLIT_QR.value else "cash_amount"
    if manual <= 0:
        label = "QR/UPI or cash" if payment_type == PaymentType.SPLIT_QR.value else "Cash"
        raise ValidationError(f"{label} amount must be greater than 0", field=field)
    if manual >= owed:
        raise ValidationError("Manual payment must be less than the total amount to pay", field=field)

    residual = owed - manual
    return AmountBreakdown(
        total=owed,
        booking=manual,
        remaining=residual,
        card=residual,
        upi_portion=upi_portion,
        cash_portion=cash_portion,
    )


def compute_amounts(
    payment_type: str,
    stage: str,
    owed: int,
    *,
    booking_percent: int,
    booking_method: str | None = None,
    upi_amount: int | None = None,
    cash_amount: int | None = None,
) -> AmountBreakdown:
    """Select the breakdown for a payment type and purchase stage."""

    if owed <= 0:
        raise ValidationError("Amount to pay must be greater than 0", field="amount")
    if payment_type == PaymentType.FULL_CARD.value:
        return full_card(owed)
    if payment_type == PaymentType.CASH_BOOKING.value:
        if stage == PurchaseStage.BALANCE_PAYMENT.value:
            return cash_balance(owed)
        return booking(owed, booking_percent, BookingMethod.CASH.value)
    if payment_type == PaymentType.ADVANCE_UPI.value:
        return booking(owed, booking_percent, booking_method or BookingMethod.CARD.value)
    if payment_type in (PaymentType.SPLIT_QR.value, PaymentType.SPLIT_CASH.value):
        return split(payment_type, owed, upi_amount, cash_amount)
    raise ValidationError(f"Invalid payment type: {payment_type}", field="payment_type")


def amounts_balanced(txn) -> bool:
    """Check the ledger invariant for one transaction row."""

    if txn.booking_amount < 0 or txn.remaining_amount < 0:
        return False
    settled = txn.status in SETTLED_STATUSES
    if txn.purchase_stage != PurchaseStage.INITIAL_BOOKING.value and settled:
        return txn.remaining_amount == 0
    if txn.settled_by_transaction_id is not None:
        return txn.remaining_amount == 0
    return txn.booking_amount + txn.remaining_amount == txn.total_amount
