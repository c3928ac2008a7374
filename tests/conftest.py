"""Shared fixtures: in-memory ledger, fake card gateway and seeded vehicles."""

import json
import os
from uuid import uuid4

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["OUTBOX_PUBLISHER_ENABLED"] = "false"
os.environ["UPI_ID"] = "marketplace@upi"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_dummy"

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vehiclepay.common.config import CommonSettings
from vehiclepay.common.db import Base
from vehiclepay.common.errors import GatewayError, WebhookSignatureError
from vehiclepay.services.payments.gateway import CheckoutSession, GatewayEvent, SessionStatus
from vehiclepay.services.payments.models import OutboxEvent, Transaction, TransactionTimeline, Vehicle
from vehiclepay.services.payments.schemas import Caller
from vehiclepay.services.payments.service import PaymentsService

VEHICLE_PRICE = 1_000_000


class FakeGateway:
    """In-memory card gateway; webhooks are accepted when signed "valid"."""

    def __init__(self) -> None:
        self.sessions: dict[str, SessionStatus] = {}
        self.created: list[dict] = []
        self.expired: list[str] = []
        self.fail_create = False
        self.fail_retrieve = False

    def create_checkout_session(self, amount_minor, currency, description, success_url, cancel_url, metadata):
        if self.fail_create:
            raise GatewayError("Payment gateway error: connection reset")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(
            {
                "session_id": session_id,
                "amount_minor": amount_minor,
                "currency": currency,
                "description": description,
                "metadata": metadata,
            }
        )
        self.sessions[session_id] = SessionStatus(session_id=session_id, payment_status="unpaid")
        return CheckoutSession(session_id=session_id, redirect_url=f"https://checkout.test/{session_id}")

    def retrieve_session(self, session_id):
        if self.fail_retrieve:
            raise GatewayError("Payment gateway error: timeout")
        return self.sessions[session_id]

    def mark_paid(self, session_id, reference="pi_test_1"):
        self.sessions[session_id] = SessionStatus(session_id=session_id, payment_status="paid", payment_reference=reference)

    def mark_expired(self, session_id):
        self.sessions[session_id] = SessionStatus(session_id=session_id, payment_status="expired")

    def parse_webhook(self, raw_body, signature):
        if signature != "valid":
            raise WebhookSignatureError("signature mismatch")
        payload = json.loads(raw_body)
        return GatewayEvent(event_id=payload["id"], event_type=payload["type"], data=payload["data"]["object"])

    def expire_session(self, session_id):
        self.expired.append(session_id)


@pytest.fixture
def config():
    return CommonSettings(
        _env_file=None,
        postgres_dsn="sqlite://",
        upi_id="marketplace@upi",
        upi_name="Marketplace Payments",
        otel_enabled=False,
        outbox_publisher_enabled=False,
    )


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(session_factory, gateway, config):
    return PaymentsService(session_factory, gateway, config)


@pytest.fixture
def make_vehicle(session_factory):
    def _make(price=VEHICLE_PRICE, seller_id="seller-1", status="approved"):
        with session_factory() as db:
            vehicle = Vehicle(
                id=str(uuid4()),
                seller_id=seller_id,
                make="Maruti",
                model="Swift",
                year=2021,
                price=price,
                status=status,
            )
            db.add(vehicle)
            db.commit()
            return vehicle

    return _make


@pytest.fixture
def vehicle(make_vehicle):
    return make_vehicle()


@pytest.fixture
def buyer():
    return Caller(user_id="buyer-1")


@pytest.fixture
def other_buyer():
    return Caller(user_id="buyer-2")


@pytest.fixture
def seller():
    return Caller(user_id="seller-1", role="seller")


@pytest.fixture
def admin():
    return Caller(user_id="admin-1", role="admin")


@pytest.fixture
def load(session_factory):
    """Fresh read of one transaction row."""

    def _load(transaction_id):
        with session_factory() as db:
            return db.get(Transaction, transaction_id)

    return _load


@pytest.fixture
def vehicle_status(session_factory):
    def _status(vehicle_id):
        with session_factory() as db:
            return db.get(Vehicle, vehicle_id).status

    return _status


@pytest.fixture
def outbox_topics(session_factory):
    def _topics(transaction_id):
        with session_factory() as db:
            return list(
                db.execute(select(OutboxEvent.topic).where(OutboxEvent.aggregate_id == transaction_id)).scalars()
            )

    return _topics


@pytest.fixture
def timeline(session_factory):
    def _timeline(transaction_id):
        with session_factory() as db:
            return list(
                db.execute(
                    select(TransactionTimeline.to_state).where(TransactionTimeline.transaction_id == transaction_id)
                ).scalars()
            )

    return _timeline


@pytest.fixture
def send_webhook(service):
    def _send(event_type, obj, event_id=None, signature="valid"):
        body = json.dumps(
            {"id": event_id or f"evt_{uuid4().hex}", "type": event_type, "data": {"object": obj}}
        ).encode("utf-8")
        return service.reconciliation.handle_gateway_webhook(body, signature)

    return _send
