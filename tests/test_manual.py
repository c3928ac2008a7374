"""Manual (UPI/cash) leg attestation and peer-confirmed bookings."""

import pytest

from vehiclepay.common.errors import AuthorizationError, StateConflictError
from vehiclepay.services.payments.schemas import Caller, CheckoutRequest


def _checkout(service, caller, vehicle, **kwargs):
    return service.checkout.create_checkout(caller, CheckoutRequest(vehicle_id=vehicle.id, **kwargs))


def test_verify_manual_only_for_split_payments(service, vehicle, buyer):
    resp = _checkout(service, buyer, vehicle, payment_type="full_card")
    with pytest.raises(StateConflictError):
        service.manual.verify_manual(buyer, resp.transaction_id, "UPI-1")


def test_verify_manual_is_buyer_only(service, vehicle, buyer, seller):
    resp = _checkout(service, buyer, vehicle, payment_type="split_cash", cash_amount=100_000)
    with pytest.raises(AuthorizationError):
        service.manual.verify_manual(seller, resp.transaction_id, "CASH-RECEIPT")


def test_verify_manual_overwrites_and_falls_back_to_reference(service, vehicle, buyer, load):
    """Repeat calls overwrite; without an id the generated reference is kept."""

    resp = _checkout(service, buyer, vehicle, payment_type="split_cash", cash_amount=100_000)

    service.manual.verify_manual(buyer, resp.transaction_id)
    txn = load(resp.transaction_id)
    assert txn.manual_transaction_id == resp.manual_reference
    assert txn.manual_reference.startswith("SPLIT-CASH-")
    assert txn.manual_method == "cash"

    service.manual.verify_manual(buyer, resp.transaction_id, "RECEIPT-7")
    service.manual.verify_manual(buyer, resp.transaction_id, "RECEIPT-8")
    txn = load(resp.transaction_id)
    assert txn.manual_transaction_id == "RECEIPT-8"
    assert txn.status == "payment_initiated"


def test_verify_manual_rejected_on_closed_transaction(service, vehicle, buyer, load):
    first = _checkout(service, buyer, vehicle, payment_type="split_qr", upi_amount=100_000)
    _checkout(service, buyer, vehicle, payment_type="split_qr", upi_amount=100_000)
    assert load(first.transaction_id).status == "cancelled"
    with pytest.raises(StateConflictError):
        service.manual.verify_manual(buyer, first.transaction_id, "UPI-9")


def test_split_card_leg_completion_is_flagged_peer_attested(service, vehicle, buyer, load, vehicle_status, send_webhook):
    """The sale completes on the card leg, but the manual leg was never proven."""

    resp = _checkout(service, buyer, vehicle, payment_type="split_qr", upi_amount=200_000)
    service.manual.verify_manual(buyer, resp.transaction_id, "UPI-REF")
    send_webhook("checkout.session.completed", {"id": resp.session_id, "payment_intent": "pi_split"})

    txn = load(resp.transaction_id)
    assert txn.status == "payment_completed"
    assert txn.remaining_amount == 0
    assert txn.verification_source == "peer_attested"
    assert vehicle_status(vehicle.id) == "sold"


def test_advance_upi_booking_payload(service, vehicle, buyer, config):
    resp = _checkout(service, buyer, vehicle, payment_type="advance_upi", booking_method="upi")

    assert resp.booking_amount == 50_000
    assert resp.remaining_amount == 950_000
    assert resp.checkout_url is None
    assert resp.manual_reference.startswith(f"{config.reference_prefix}-BK-")
    assert "am=50000" in resp.upi_link
    assert f"tr={resp.manual_reference}" in resp.upi_link


def test_confirm_booking_by_buyer_with_external_reference(service, vehicle, buyer, load):
    resp = _checkout(service, buyer, vehicle, payment_type="advance_upi", booking_method="upi")
    service.manual.confirm_booking(buyer, resp.transaction_id, "UPI-TXN-555")

    txn = load(resp.transaction_id)
    assert txn.status == "payment_completed"
    assert txn.manual_transaction_id == "UPI-TXN-555"
    assert txn.payment_method == "upi"
    assert txn.verification_source == "peer_attested"


def test_confirm_booking_rejects_strangers(service, vehicle, buyer):
    resp = _checkout(service, buyer, vehicle, payment_type="cash_booking")
    with pytest.raises(AuthorizationError):
        service.manual.confirm_booking(Caller(user_id="someone-else"), resp.transaction_id)


def test_card_booking_is_not_confirmed_manually(service, vehicle, buyer, seller):
    resp = _checkout(service, buyer, vehicle, payment_type="advance_upi", booking_method="card")
    assert resp.card_amount == 50_000
    with pytest.raises(StateConflictError):
        service.manual.confirm_booking(seller, resp.transaction_id)


def test_confirm_booking_only_for_booking_types(service, vehicle, buyer, seller):
    resp = _checkout(service, buyer, vehicle, payment_type="full_card")
    with pytest.raises(StateConflictError):
        service.manual.confirm_booking(seller, resp.transaction_id)


def test_repeated_confirmation_is_a_no_op(service, vehicle, buyer, seller, timeline, outbox_topics):
    resp = _checkout(service, buyer, vehicle, payment_type="cash_booking")
    service.manual.confirm_booking(seller, resp.transaction_id)
    again = service.manual.confirm_booking(buyer, resp.transaction_id)

    assert again.status == "payment_completed"
    assert timeline(resp.transaction_id).count("payment_completed") == 1
    assert outbox_topics(resp.transaction_id).count("payments.completed") == 1


def test_cash_balance_confirmation_sells_vehicle(service, vehicle, buyer, seller, load, vehicle_status):
    """Cash balance row: no token, everything owed, sold once confirmed."""

    booking = _checkout(service, buyer, vehicle, payment_type="cash_booking")
    service.manual.confirm_booking(seller, booking.transaction_id)

    balance = _checkout(
        service, buyer, vehicle, payment_type="cash_booking", previous_transaction_id=booking.transaction_id
    )
    assert balance.manual_reference.startswith("CASH-BAL-")
    assert (balance.total_amount, balance.booking_amount, balance.remaining_amount) == (950_000, 0, 950_000)
    assert balance.instructions == "Please contact the seller to confirm balance payment in cash."
    assert vehicle_status(vehicle.id) == "approved"

    service.manual.confirm_booking(seller, balance.transaction_id)

    assert load(balance.transaction_id).remaining_amount == 0
    assert load(booking.transaction_id).settled_by_transaction_id == balance.transaction_id
    assert vehicle_status(vehicle.id) == "sold"
