"""Card gateway adapter.

The payment flows depend on four gateway calls: open a hosted checkout session,
read a session's payment status, verify/parse a webhook, and expire an unused
session. Every call may fail transiently; failures surface as `GatewayError`.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import stripe

from vehiclepay.common.errors import GatewayError, WebhookSignatureError
from vehiclepay.common.logging import logger


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class SessionStatus:
    """Normalized session state: `paid`, `unpaid` or `expired`."""

    session_id: str
    payment_status: str
    payment_reference: str | None = None


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        amount_minor: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> CheckoutSession: ...

    def retrieve_session(self, session_id: str) -> SessionStatus: ...

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> GatewayEvent: ...

    def expire_session(self, session_id: str) -> None: ...


def normalize_session_status(status: str | None, payment_status: str | None) -> str:
    if status == "expired":
        return "expired"
    if payment_status in ("paid", "no_payment_required"):
        return "paid"
    return "unpaid"


class StripeGateway:
    """Stripe Checkout implementation of `PaymentGateway`."""

    def __init__(self, secret_key: str, webhook_secret: str, timeout_seconds: float = 10.0) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        # Bounded timeout and no automatic retries: callers decide when to retry.
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        stripe.max_network_retries = 0

    def _require_key(self) -> None:
        if not self.secret_key:
            raise GatewayError("card gateway is not configured", code="GATEWAY_NOT_CONFIGURED", status_code=503)

    def create_checkout_session(
        self,
        amount_minor: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> CheckoutSession:
        self._require_key()
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {"name": description},
                            "unit_amount": amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            logger.error("gateway_session_create_failed error_type=%s error=%s", type(exc).__name__, exc)
            raise GatewayError(f"Payment gateway error: {exc.user_message or exc}") from exc
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    def retrieve_session(self, session_id: str) -> SessionStatus:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error("gateway_session_retrieve_failed session_id=%s error=%s", session_id, exc)
            raise GatewayError(f"Payment gateway error: {exc.user_message or exc}") from exc
        payment_intent = getattr(session, "payment_intent", None)
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        return SessionStatus(
            session_id=session_id,
            payment_status=normalize_session_status(session.status, session.payment_status),
            payment_reference=payment_intent,
        )

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> GatewayEvent:
        if not signature:
            raise WebhookSignatureError("missing webhook signature")
        if not self.webhook_secret:
            raise WebhookSignatureError("webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
            # Signature holds; read plain JSON rather than Stripe objects.
            payload = json.loads(raw_body)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise WebhookSignatureError(f"unparseable webhook payload: {exc}") from exc
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise WebhookSignatureError("unparseable webhook payload")
        data = payload.get("data") or {}
        return GatewayEvent(
            event_id=payload.get("id"),
            event_type=payload.get("type"),
            data=(data.get("object") if isinstance(data, dict) else None) or {},
        )

    def expire_session(self, session_id: str) -> None:
        self._require_key()
        try:
            stripe.checkout.Session.expire(session_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            raise GatewayError(f"Payment gateway error: {exc.user_message or exc}") from exc
