"""Payment ledger database models.

`transactions` is the source of truth for how much of a vehicle sale has been
paid and how. Rows are never deleted: cancelled and failed attempts stay for
the audit trail, next to their timeline and the service-local inbox/outbox.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, validates

from vehiclepay.common.db import Base


class PaymentType(str, Enum):
    FULL_CARD = "full_card"
    ADVANCE_UPI = "advance_upi"
    CASH_BOOKING = "cash_booking"
    SPLIT_QR = "split_qr"
    SPLIT_CASH = "split_cash"


class PurchaseStage(str, Enum):
    INITIAL_BOOKING = "initial_booking"
    BALANCE_PAYMENT = "balance_payment"
    FULL_PAYMENT = "full_payment"


class BookingMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    CASH = "cash"


class VerificationSource(str, Enum):
    GATEWAY_CONFIRMED = "gateway_confirmed"
    PEER_ATTESTED = "peer_attested"
    ADMIN_VERIFIED = "admin_verified"


class VehicleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SOLD = "sold"


SPLIT_TYPES = frozenset({PaymentType.SPLIT_QR.value, PaymentType.SPLIT_CASH.value})
BOOKING_TYPES = frozenset({PaymentType.ADVANCE_UPI.value, PaymentType.CASH_BOOKING.value})

json_type = JSON().with_variant(JSONB(), "postgresql")


class Vehicle(Base):
    """Listing-layer vehicle row; only price/seller/status matter here."""

    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_id: Mapped[str] = mapped_column(String, index=True)
    make: Mapped[str] = mapped_column(String)
    model: Mapped[str] = mapped_column(String)
    year: Mapped[int] = mapped_column(Integer)
    price: Mapped[int] = mapped_column(Integer)
    registration_number: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True, default=VehicleStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def display_name(self) -> str:
        return f"{self.year} {self.make} {self.model}"


class Transaction(Base):
    """One purchase attempt for a (vehicle, buyer) pair."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "uq_transactions_live_attempt",
            "vehicle_id",
            "buyer_id",
            unique=True,
            postgresql_where=text("status = 'payment_initiated'"),
            sqlite_where=text("status = 'payment_initiated'"),
        ),
        Index("ix_transactions_buyer_id_created_at", "buyer_id", "created_at"),
        Index("ix_transactions_seller_id_created_at", "seller_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    vehicle_id: Mapped[str] = mapped_column(String, index=True)
    buyer_id: Mapped[str] = mapped_column(String, index=True)
    seller_id: Mapped[str] = mapped_column(String, index=True)
    previous_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    settled_by_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)

    vehicle_price: Mapped[int] = mapped_column(Integer)
    total_amount: Mapped[int] = mapped_column(Integer)
    booking_amount: Mapped[int] = mapped_column(Integer, default=0)
    remaining_amount: Mapped[int] = mapped_column(Integer)
    card_amount: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3))

    payment_type: Mapped[str] = mapped_column(String)
    purchase_stage: Mapped[str] = mapped_column(String)
    booking_method: Mapped[str | None] = mapped_column(String, nullable=True)
    manual_method: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    gateway_session_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    manual_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    manual_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    manual_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_source: Mapped[str | None] = mapped_column(String, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_description: Mapped[str | None] = mapped_column(String, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    delivery_status: Mapped[str | None] = mapped_column(String, nullable=True)
    estimated_ready_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_notes: Mapped[str | None] = mapped_column(String, nullable=True)
    collected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @validates("vehicle_id", "buyer_id", "seller_id")
    def _freeze_parties(self, key: str, value: str) -> str:
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"{key} is immutable once set")
        return value

    @property
    def is_split(self) -> bool:
        return self.payment_type in SPLIT_TYPES

    @property
    def has_manual_leg(self) -> bool:
        return self.manual_method is not None


class TransactionTimeline(Base):
    """Immutable audit trail of every transaction status transition."""

    __tablename__ = "transaction_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_id: Mapped[str] = mapped_column(ForeignKey("transactions.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(json_type)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookInbox(Base):
    """Deduplication table for gateway webhook events."""

    __tablename__ = "webhook_inbox"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_webhook_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
