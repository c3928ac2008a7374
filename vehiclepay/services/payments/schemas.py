"""API request/response schemas for payment endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from vehiclepay.services.payments.models import BookingMethod, PaymentType


class Caller(BaseModel):
    """Authenticated identity supplied by the auth layer."""

    user_id: str = Field(min_length=1)
    role: str = "buyer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class CheckoutRequest(BaseModel):
    vehicle_id: str = Field(min_length=1)
    payment_type: PaymentType = PaymentType.FULL_CARD
    upi_amount: int | None = None
    cash_amount: int | None = None
    booking_method: BookingMethod | None = None
    previous_transaction_id: str | None = None


class CheckoutResponse(BaseModel):
    """Checkout outcome: a redirect, a manual-payment payload, or both."""

    transaction_id: str
    payment_type: str
    purchase_stage: str
    vehicle_name: str
    currency: str
    total_amount: int
    booking_amount: int
    remaining_amount: int
    card_amount: int
    checkout_url: str | None = None
    session_id: str | None = None
    manual_reference: str | None = None
    manual_method: str | None = None
    upi_link: str | None = None
    upi_id: str | None = None
    instructions: str | None = None


class VerifyManualRequest(BaseModel):
    transaction_id: str = Field(min_length=1)
    manual_transaction_id: str | None = Field(default=None, min_length=1)


class ConfirmBookingRequest(BaseModel):
    transaction_id: str = Field(min_length=1)
    external_reference: str | None = None


class VerifyRequest(BaseModel):
    transaction_id: str | None = None
    session_id: str | None = None


class VerifyResponse(BaseModel):
    verified: bool
    transaction_id: str
    status: str
    message: str


class FailureReport(BaseModel):
    transaction_id: str = Field(min_length=1)
    error_code: str | None = None
    error_description: str | None = None


class DeliveryUpdateRequest(BaseModel):
    delivery_status: str
    estimated_ready_date: datetime | None = None
    delivery_notes: str | None = None


class AdminStatusUpdate(BaseModel):
    status: str


class WebhookAck(BaseModel):
    """Always returned to the gateway; `received=False` means nothing was applied."""

    received: bool
    event_type: str | None = None
    outcome: str


class ReconcileReport(BaseModel):
    checked: int = 0
    completed: int = 0
    cancelled: int = 0
    pending: int = 0
    errors: int = 0


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vehicle_id: str
    buyer_id: str
    seller_id: str
    previous_transaction_id: str | None
    settled_by_transaction_id: str | None
    vehicle_price: int
    total_amount: int
    booking_amount: int
    remaining_amount: int
    card_amount: int
    currency: str
    payment_type: str
    purchase_stage: str
    booking_method: str | None
    manual_method: str | None
    status: str
    gateway_session_id: str | None
    gateway_payment_id: str | None
    payment_method: str | None
    manual_reference: str | None
    manual_transaction_id: str | None
    manual_verified_at: datetime | None
    verification_source: str | None
    error_code: str | None
    error_description: str | None
    cancel_reason: str | None
    delivery_status: str | None
    estimated_ready_date: datetime | None
    delivery_notes: str | None
    collected_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class TransactionPage(BaseModel):
    transactions: list[TransactionResponse]
    page: int
    limit: int
    total: int
    total_pages: int


class PaymentConfigResponse(BaseModel):
    upi_id: str | None
    upi_name: str
    currency: str
    booking_percent: int
