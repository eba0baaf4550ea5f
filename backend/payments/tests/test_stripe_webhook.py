from datetime import timedelta
from decimal import Decimal

import pytest
import stripe
from rest_framework.test import APIClient

from bookings.models import Booking
from payments import stripe_api
from payments.models import Transaction

pytestmark = pytest.mark.django_db

WEBHOOK_URL = "/api/payments/stripe/webhook/"


@pytest.fixture
def send_event(monkeypatch):
    def _send(event_type, data_object):
        event = {"type": event_type, "data": {"object": data_object}}
        monkeypatch.setattr(
            stripe_api.stripe.Webhook,
            "construct_event",
            lambda payload, sig_header, secret: event,
        )
        return APIClient().post(
            WEBHOOK_URL,
            data=b"{}",
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=test",
        )

    return _send


@pytest.fixture
def pending_booking(booking_factory, future_start):
    return booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=2),
        stripe_session_id="cs_live",
    )


def checkout_session(booking, **overrides):
    session = {
        "id": "cs_live",
        "payment_status": "paid",
        "payment_intent": "pi_live",
        "metadata": {"booking_id": str(booking.id), "kind": "booking"},
    }
    session.update(overrides)
    return session


def test_invalid_signature_is_rejected(monkeypatch):
    def reject(payload, sig_header, secret):
        raise stripe.SignatureVerificationError("bad signature", sig_header)

    monkeypatch.setattr(stripe_api.stripe.Webhook, "construct_event", reject)

    resp = APIClient().post(
        WEBHOOK_URL,
        data=b"{}",
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE="t=1,v1=wrong",
    )

    assert resp.status_code == 400


def test_completed_session_confirms_booking_once(send_event, pending_booking):
    first = send_event("checkout.session.completed", checkout_session(pending_booking))
    second = send_event("checkout.session.completed", checkout_session(pending_booking))

    assert first.status_code == 200
    assert second.status_code == 200
    pending_booking.refresh_from_db()
    assert pending_booking.status == Booking.Status.CONFIRMED
    assert pending_booking.payment_status == Booking.PaymentStatus.PAID
    assert pending_booking.payment_reference == "pi_live"
    charges = Transaction.objects.filter(booking=pending_booking, kind=Transaction.Kind.BOOKING_CHARGE)
    assert charges.count() == 1
    assert charges.get().amount == Decimal("10.00")


def test_unpaid_completed_session_is_ignored(send_event, pending_booking):
    send_event(
        "checkout.session.completed",
        checkout_session(pending_booking, payment_status="unpaid", payment_intent=None),
    )

    pending_booking.refresh_from_db()
    assert pending_booking.status == Booking.Status.PENDING_PAYMENT


def test_async_payment_success_confirms_booking(send_event, pending_booking):
    send_event("checkout.session.async_payment_succeeded", checkout_session(pending_booking))

    pending_booking.refresh_from_db()
    assert pending_booking.status == Booking.Status.CONFIRMED


def test_expired_session_releases_booking(send_event, pending_booking):
    resp = send_event(
        "checkout.session.expired",
        checkout_session(pending_booking, payment_status="unpaid", payment_intent=None),
    )

    assert resp.status_code == 200
    pending_booking.refresh_from_db()
    assert pending_booking.status == Booking.Status.EXPIRED


def test_expired_replaced_session_is_ignored(send_event, pending_booking):
    send_event(
        "checkout.session.expired",
        checkout_session(pending_booking, id="cs_old", payment_status="unpaid"),
    )

    pending_booking.refresh_from_db()
    assert pending_booking.status == Booking.Status.PENDING_PAYMENT


def test_unknown_booking_and_event_types_are_acknowledged(send_event):
    assert send_event("checkout.session.completed", {"id": "cs_x", "payment_status": "paid", "metadata": {"booking_id": "999999"}}).status_code == 200
    assert send_event("customer.created", {"id": "cus_1"}).status_code == 200


@pytest.fixture
def refunding_booking(booking_factory, future_start):
    return booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=2),
        status=Booking.Status.CANCELLED,
        payment_status=Booking.PaymentStatus.REFUNDING,
        refund_status=Booking.RefundStatus.REQUESTED,
        payment_reference="pi_refund",
        cancelled_by=Booking.CancelledBy.RENTER,
    )


def test_charge_refunded_event_completes_refund(send_event, refunding_booking):
    send_event(
        "charge.refunded",
        {
            "id": "ch_1",
            "payment_intent": "pi_refund",
            "refunded": True,
            "refunds": {"data": [{"id": "re_hook", "status": "succeeded"}]},
        },
    )

    refunding_booking.refresh_from_db()
    assert refunding_booking.payment_status == Booking.PaymentStatus.REFUNDED
    assert refunding_booking.refund_status == Booking.RefundStatus.REFUNDED
    assert refunding_booking.refund_id == "re_hook"
    refund_tx = Transaction.objects.get(booking=refunding_booking, kind=Transaction.Kind.REFUND)
    assert refund_tx.amount == Decimal("-10.00")


def test_failed_refund_update_is_recorded(send_event, refunding_booking):
    send_event(
        "refund.updated",
        {
            "id": "re_fail",
            "payment_intent": "pi_refund",
            "status": "failed",
            "failure_reason": "expired_or_canceled_card",
        },
    )

    refunding_booking.refresh_from_db()
    assert refunding_booking.payment_status == Booking.PaymentStatus.REFUNDING
    assert refunding_booking.refund_status == Booking.RefundStatus.FAILED
    assert refunding_booking.refund_error == "expired_or_canceled_card"
    assert not Transaction.objects.filter(kind=Transaction.Kind.REFUND).exists()


class TestIssueRefund:
    def test_returns_refund_id_and_status(self, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return {"id": "re_ok", "status": "pending"}

        monkeypatch.setattr(stripe_api.stripe.Refund, "create", fake_create)

        result = stripe_api.issue_refund(
            payment_reference="pi_1", amount=Decimal("12.345"), idempotency_key="booking:1:refund"
        )

        assert result == {"id": "re_ok", "status": "pending"}
        assert calls == [
            {"payment_intent": "pi_1", "amount": 1235, "idempotency_key": "booking:1:refund"}
        ]

    def test_already_refunded_charge_counts_as_success(self, monkeypatch):
        def already_refunded(**kwargs):
            raise stripe.InvalidRequestError("Charge already refunded", None, code="charge_already_refunded")

        monkeypatch.setattr(stripe_api.stripe.Refund, "create", already_refunded)

        result = stripe_api.issue_refund(payment_reference="pi_1", amount=Decimal("5.00"), idempotency_key="k")

        assert result == {"id": "", "status": "succeeded"}

    def test_connection_errors_are_transient(self, monkeypatch):
        def offline(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe_api.stripe.Refund, "create", offline)

        with pytest.raises(stripe_api.StripeTransientError):
            stripe_api.issue_refund(payment_reference="pi_1", amount=Decimal("5.00"), idempotency_key="k")

    def test_missing_payment_reference_is_rejected(self):
        with pytest.raises(stripe_api.StripePaymentError):
            stripe_api.issue_refund(payment_reference="", amount=Decimal("5.00"), idempotency_key="k")

    def test_missing_api_key_is_a_configuration_error(self, settings):
        settings.STRIPE_SECRET_KEY = ""

        with pytest.raises(stripe_api.StripeConfigurationError):
            stripe_api.issue_refund(payment_reference="pi_1", amount=Decimal("5.00"), idempotency_key="k")
