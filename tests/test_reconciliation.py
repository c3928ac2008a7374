"""Webhook idempotency, poll/webhook races, admin overrides and the stale sweep."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from vehiclepay.common.errors import AuthorizationError, StateConflictError, ValidationError
from vehiclepay.services.payments.models import Transaction
from vehiclepay.services.payments.schemas import CheckoutRequest


@pytest.fixture
def card_checkout(service, vehicle, buyer):
    return service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))


def test_duplicate_webhook_applied_once(card_checkout, send_webhook, timeline, outbox_topics, vehicle_status, vehicle):
    """Same event id twice: second delivery is skipped through the inbox."""

    session = {"id": card_checkout.session_id, "payment_intent": "pi_dup"}
    first = send_webhook("checkout.session.completed", session, event_id="evt_dup")
    second = send_webhook("checkout.session.completed", session, event_id="evt_dup")

    assert first.outcome == "applied"
    assert second.outcome == "duplicate"
    assert timeline(card_checkout.transaction_id).count("payment_completed") == 1
    assert outbox_topics(card_checkout.transaction_id).count("vehicles.sold") == 1
    assert vehicle_status(vehicle.id) == "sold"


def test_redelivered_completion_with_new_event_id_is_no_op(card_checkout, send_webhook, outbox_topics):
    session = {"id": card_checkout.session_id, "payment_intent": "pi_1"}
    send_webhook("checkout.session.completed", session)
    again = send_webhook("checkout.session.completed", session)

    assert again.outcome == "already_applied"
    assert outbox_topics(card_checkout.transaction_id).count("payments.completed") == 1


def test_bad_signature_acknowledged_without_changes(card_checkout, send_webhook, load):
    ack = send_webhook("checkout.session.completed", {"id": card_checkout.session_id}, signature="forged")

    assert ack.received is False
    assert ack.outcome == "invalid_signature"
    assert load(card_checkout.transaction_id).status == "payment_initiated"


def test_unknown_session_acknowledged(send_webhook):
    ack = send_webhook("checkout.session.completed", {"id": "cs_unknown"})
    assert ack.received is True
    assert ack.outcome == "unknown_session"


def test_unhandled_event_type_acknowledged(send_webhook):
    ack = send_webhook("customer.created", {"id": "cus_1"})
    assert ack.outcome == "unhandled"


def test_expired_session_cancels_without_touching_vehicle(card_checkout, send_webhook, load, vehicle_status, vehicle):
    ack = send_webhook("checkout.session.expired", {"id": card_checkout.session_id})

    txn = load(card_checkout.transaction_id)
    assert ack.outcome == "applied"
    assert txn.status == "cancelled"
    assert txn.cancel_reason == "checkout session expired"
    assert vehicle_status(vehicle.id) == "approved"


def test_payment_failure_correlated_by_metadata(card_checkout, send_webhook, load):
    intent = {
        "id": "pi_failed",
        "metadata": {"transaction_id": card_checkout.transaction_id},
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
    }
    ack = send_webhook("payment_intent.payment_failed", intent)

    txn = load(card_checkout.transaction_id)
    assert ack.outcome == "applied"
    assert txn.status == "payment_failed"
    assert txn.error_code == "card_declined"
    assert txn.error_description == "Your card was declined."


def test_payment_after_supersession_is_flagged_not_applied(service, vehicle, buyer, send_webhook, load, outbox_topics):
    """Money captured on a cancelled attempt stays cancelled and raises an alert event."""

    old = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))
    service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))

    ack = send_webhook("checkout.session.completed", {"id": old.session_id, "payment_intent": "pi_late"})

    assert ack.outcome == "orphaned_capture"
    assert load(old.transaction_id).status == "cancelled"
    assert "payments.orphaned_capture" in outbox_topics(old.transaction_id)


def test_poll_verify_completes_and_webhook_then_no_ops(
    service, gateway, card_checkout, buyer, send_webhook, outbox_topics, vehicle_status, vehicle
):
    """Poll and webhook race on the same transition; side effects run once."""

    gateway.mark_paid(card_checkout.session_id, "pi_poll")
    result = service.reconciliation.poll_verify(buyer, transaction_id=card_checkout.transaction_id)
    assert result.verified is True
    assert result.status == "payment_completed"

    ack = send_webhook("checkout.session.completed", {"id": card_checkout.session_id, "payment_intent": "pi_poll"})
    assert ack.outcome == "already_applied"
    assert outbox_topics(card_checkout.transaction_id).count("vehicles.sold") == 1
    assert vehicle_status(vehicle.id) == "sold"

    again = service.reconciliation.poll_verify(buyer, session_id=card_checkout.session_id)
    assert again.verified is True
    assert again.message == "Payment already verified"


def test_poll_verify_unpaid_and_expired(service, gateway, card_checkout, buyer, load):
    pending = service.reconciliation.poll_verify(buyer, transaction_id=card_checkout.transaction_id)
    assert pending.verified is False
    assert pending.status == "payment_initiated"

    gateway.mark_expired(card_checkout.session_id)
    expired = service.reconciliation.poll_verify(buyer, transaction_id=card_checkout.transaction_id)
    assert expired.status == "cancelled"
    assert load(card_checkout.transaction_id).cancel_reason == "checkout session expired"


def test_poll_verify_absorbs_gateway_outage(service, gateway, card_checkout, buyer):
    gateway.fail_retrieve = True
    result = service.reconciliation.poll_verify(buyer, transaction_id=card_checkout.transaction_id)
    assert result.verified is False
    assert result.status == "payment_initiated"


def test_poll_verify_guards(service, card_checkout, seller):
    with pytest.raises(ValidationError):
        service.reconciliation.poll_verify(seller)
    with pytest.raises(AuthorizationError):
        service.reconciliation.poll_verify(seller, transaction_id=card_checkout.transaction_id)


def test_stale_transition_is_skipped(service, session_factory, card_checkout, vehicle_status, vehicle, load):
    """A writer holding an outdated row matches zero rows and has no side effects."""

    with session_factory() as db:
        stale = db.get(Transaction, card_checkout.transaction_id)

    with session_factory() as db:
        fresh = db.get(Transaction, card_checkout.transaction_id)
        service.reconciliation.cancel(db, fresh, "checkout session expired")
        db.commit()

    with session_factory() as db:
        stale = db.merge(stale, load=False)
        applied = service.reconciliation.complete(db, stale, "late_webhook", "gateway_confirmed")
        db.commit()

    assert applied is False
    assert load(card_checkout.transaction_id).status == "cancelled"
    assert vehicle_status(vehicle.id) == "approved"


def test_client_reported_failure(service, card_checkout, buyer, load):
    service.reconciliation.record_client_failure(buyer, card_checkout.transaction_id, "USER_CLOSED", None)

    txn = load(card_checkout.transaction_id)
    assert txn.status == "payment_failed"
    assert txn.error_code == "USER_CLOSED"
    assert txn.error_description == "Payment failed"
    with pytest.raises(StateConflictError):
        service.reconciliation.record_client_failure(buyer, card_checkout.transaction_id, "AGAIN", None)


def test_admin_verification_finalize_and_refund(service, make_vehicle, buyer, load, vehicle_status):
    """Admin completes, finalizes one sale and refunds another; vehicles never revert."""

    first, second = make_vehicle(), make_vehicle()
    one = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=first.id, payment_type="split_cash", cash_amount=100_000))
    two = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=second.id, payment_type="full_card"))

    service.reconciliation.admin_update_status(one.transaction_id, "payment_completed")
    txn = load(one.transaction_id)
    assert txn.verification_source == "admin_verified"
    assert txn.remaining_amount == 0
    assert vehicle_status(first.id) == "sold"

    service.reconciliation.admin_update_status(one.transaction_id, "completed")
    assert load(one.transaction_id).status == "completed"
    with pytest.raises(StateConflictError):
        service.reconciliation.admin_update_status(one.transaction_id, "refunded")

    service.reconciliation.admin_update_status(two.transaction_id, "payment_completed")
    service.reconciliation.admin_update_status(two.transaction_id, "refunded")
    assert load(two.transaction_id).status == "refunded"
    assert vehicle_status(second.id) == "sold"


@pytest.mark.parametrize("status", ["cancelled", "payment_failed", "pending", "bogus"])
def test_admin_cannot_make_other_moves(service, card_checkout, status):
    with pytest.raises(StateConflictError):
        service.reconciliation.admin_update_status(card_checkout.transaction_id, status)


def test_admin_listing_paginates(service, make_vehicle, buyer):
    for _ in range(3):
        listing = make_vehicle()
        service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=listing.id, payment_type="full_card"))

    rows, total = service.reconciliation.list_transactions(status="payment_initiated", page=2, limit=2)
    assert total == 3
    assert len(rows) == 1
    assert service.reconciliation.total_pages(total, 2) == 2


def test_reconcile_stale_completes_paid_checkouts(service, session_factory, gateway, make_vehicle, buyer, load):
    """Checkouts whose webhook never came are settled by polling the gateway."""

    paid_vehicle, abandoned_vehicle, fresh_vehicle = make_vehicle(), make_vehicle(), make_vehicle()
    paid = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=paid_vehicle.id, payment_type="full_card"))
    abandoned = service.checkout.create_checkout(
        buyer, CheckoutRequest(vehicle_id=abandoned_vehicle.id, payment_type="full_card")
    )
    fresh = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=fresh_vehicle.id, payment_type="full_card"))

    with session_factory() as db:
        db.execute(
            update(Transaction)
            .where(Transaction.id.in_([paid.transaction_id, abandoned.transaction_id]))
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        db.commit()
    gateway.mark_paid(paid.session_id)
    gateway.mark_expired(abandoned.session_id)

    report = service.reconciliation.reconcile_stale(older_than_minutes=30)

    assert report.checked == 2
    assert report.completed == 1
    assert report.cancelled == 1
    assert load(paid.transaction_id).status == "payment_completed"
    assert load(abandoned.transaction_id).status == "cancelled"
    assert load(fresh.transaction_id).status == "payment_initiated"


def test_audit_ledger_reports_unbalanced_rows(service, session_factory, card_checkout):
    assert service.reconciliation.audit_ledger() == []

    with session_factory() as db:
        db.execute(
            update(Transaction)
            .where(Transaction.id == card_checkout.transaction_id)
            .values(remaining_amount=1)
        )
        db.commit()

    violations = service.reconciliation.audit_ledger()
    assert [row["transaction_id"] for row in violations] == [card_checkout.transaction_id]


def test_second_buyer_payment_on_sold_vehicle_is_flagged(
    service, vehicle, buyer, other_buyer, seller, send_webhook, load, outbox_topics, vehicle_status
):
    """Two checkouts opened while the vehicle was available; only the first capture sells it."""

    first = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))
    second = service.checkout.create_checkout(other_buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))

    send_webhook("checkout.session.completed", {"id": first.session_id, "payment_intent": "pi_first"})
    ack = send_webhook("checkout.session.completed", {"id": second.session_id, "payment_intent": "pi_second"})

    assert ack.outcome == "applied"
    winner, loser = load(first.transaction_id), load(second.transaction_id)
    assert winner.delivery_status == "processing"
    assert loser.status == "payment_completed"
    assert loser.delivery_status is None
    assert loser.estimated_ready_date is None
    assert "vehicles.sold" in outbox_topics(first.transaction_id)
    assert "vehicles.sold" not in outbox_topics(second.transaction_id)
    assert "payments.orphaned_capture" in outbox_topics(second.transaction_id)
    assert vehicle_status(vehicle.id) == "sold"

    with pytest.raises(StateConflictError):
        service.delivery.update_delivery_status(seller, second.transaction_id, "inspection")


def test_peer_confirmed_booking_on_sold_vehicle_is_flagged(
    service, vehicle, buyer, other_buyer, seller, send_webhook, outbox_topics
):
    booking = service.checkout.create_checkout(other_buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="cash_booking"))
    sale = service.checkout.create_checkout(buyer, CheckoutRequest(vehicle_id=vehicle.id, payment_type="full_card"))
    send_webhook("checkout.session.completed", {"id": sale.session_id, "payment_intent": "pi_sale"})

    service.manual.confirm_booking(seller, booking.transaction_id)

    topics = outbox_topics(booking.transaction_id)
    assert "vehicles.booked" not in topics
    assert "payments.orphaned_capture" in topics
