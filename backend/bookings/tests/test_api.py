from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
from django.db import IntegrityError
from django.utils import timezone
from rest_framework.test import APIClient

from bookings.models import Booking
from payments import stripe_api

pytestmark = pytest.mark.django_db


def auth(user):
    client = APIClient()
    token_resp = client.post(
        "/api/users/token/",
        {"username": user.username, "password": "testpass"},
        format="json",
    )
    token = token_resp.data["access"]
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
    return client


def booking_payload(parking, start, hours=2, **overrides):
    payload = {
        "parking": parking.id,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(hours=hours)).isoformat(),
    }
    payload.update(overrides)
    return payload


def test_create_booking_returns_pending_payment(parking, renter_user, future_start):
    resp = auth(renter_user).post(
        "/api/bookings/", booking_payload(parking, future_start, expected_price="9.00"), format="json"
    )

    assert resp.status_code == 201, resp.data
    assert resp.data["status"] == "pending_payment"
    assert resp.data["lifecycle_state"] == "pending_payment"
    assert resp.data["total_price"] == "10.00"
    assert resp.data["currency"] == "CHF"
    assert 0 < resp.data["payment_seconds_remaining"] <= 600


def test_create_booking_requires_auth(parking, future_start):
    resp = APIClient().post("/api/bookings/", booking_payload(parking, future_start), format="json")

    assert resp.status_code == 401


def test_create_overlapping_booking_conflicts(parking, renter_user, other_user, future_start):
    first = auth(renter_user).post("/api/bookings/", booking_payload(parking, future_start), format="json")
    assert first.status_code == 201

    resp = auth(other_user).post(
        "/api/bookings/",
        booking_payload(parking, future_start + timedelta(hours=1)),
        format="json",
    )

    assert resp.status_code == 409
    assert "non_field_errors" in resp.data


def test_database_overlap_rejection_returns_conflict(monkeypatch, parking, renter_user, future_start):
    def overlap_violation(**kwargs):
        raise IntegrityError("conflicting key value violates exclusion constraint")

    client = auth(renter_user)
    monkeypatch.setattr(Booking.objects, "create", overlap_violation)

    resp = client.post("/api/bookings/", booking_payload(parking, future_start), format="json")

    assert resp.status_code == 409
    assert "non_field_errors" in resp.data


def test_create_booking_validates_window(parking, renter_user, future_start):
    resp = auth(renter_user).post(
        "/api/bookings/",
        {
            "parking": parking.id,
            "start_time": future_start.isoformat(),
            "end_time": future_start.isoformat(),
        },
        format="json",
    )

    assert resp.status_code == 400
    assert "end_time" in resp.data


def test_create_booking_on_own_parking_rejected(parking, owner_user, future_start):
    resp = auth(owner_user).post("/api/bookings/", booking_payload(parking, future_start), format="json")

    assert resp.status_code == 400
    assert "parking" in resp.data


def test_create_booking_unknown_parking_404(renter_user, future_start):
    resp = auth(renter_user).post(
        "/api/bookings/",
        {
            "parking": 999999,
            "start_time": future_start.isoformat(),
            "end_time": (future_start + timedelta(hours=1)).isoformat(),
        },
        format="json",
    )

    assert resp.status_code == 404


def test_list_shows_renter_and_owner_bookings(parking, booking_factory, owner_user, renter_user, other_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    renter_ids = [item["id"] for item in auth(renter_user).get("/api/bookings/").data]
    owner_ids = [item["id"] for item in auth(owner_user).get("/api/bookings/", {"role": "owner"}).data]
    other_ids = [item["id"] for item in auth(other_user).get("/api/bookings/").data]

    assert renter_ids == [booking.id]
    assert owner_ids == [booking.id]
    assert other_ids == []


def test_unseen_count_counts_owner_bookings_since(booking_factory, owner_user, renter_user, future_start):
    old = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))
    booking_factory(
        start_time=future_start + timedelta(hours=2), end_time=future_start + timedelta(hours=3)
    )
    seen_at = timezone.now() - timedelta(hours=1)
    Booking.objects.filter(pk=old.pk).update(created_at=seen_at - timedelta(days=1))

    client = auth(owner_user)
    assert client.get("/api/bookings/unseen-count/").data == {"unseen": 2}
    resp = client.get("/api/bookings/unseen-count/", {"since": seen_at.isoformat()})
    assert resp.status_code == 200
    assert resp.data == {"unseen": 1}

    renter_resp = auth(renter_user).get("/api/bookings/unseen-count/")
    assert renter_resp.data == {"unseen": 0}


def test_unseen_count_rejects_bad_since(owner_user):
    resp = auth(owner_user).get("/api/bookings/unseen-count/", {"since": "yesterday"})

    assert resp.status_code == 400


def test_retrieve_expires_lapsed_hold(booking_factory, renter_user, other_user, future_start):
    booking = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        payment_expires_at=timezone.now() - timedelta(seconds=5),
    )

    resp = auth(renter_user).get(f"/api/bookings/{booking.id}/")

    assert resp.status_code == 200
    assert resp.data["status"] == "expired"
    assert resp.data["payment_seconds_remaining"] == 0
    assert auth(other_user).get(f"/api/bookings/{booking.id}/").status_code == 403


def test_availability_endpoint_is_public_and_uncached(parking, booking_factory, future_start):
    booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=2),
        status=Booking.Status.CONFIRMED,
    )
    client = APIClient()

    busy = client.get(
        "/api/bookings/availability/",
        {
            "parking": parking.id,
            "start": (future_start + timedelta(hours=1)).isoformat(),
            "end": (future_start + timedelta(hours=3)).isoformat(),
        },
    )
    free = client.get(
        "/api/bookings/availability/",
        {
            "parking": parking.id,
            "start": (future_start + timedelta(hours=2)).isoformat(),
            "end": (future_start + timedelta(hours=3)).isoformat(),
        },
    )

    assert busy.status_code == 200
    assert busy["Cache-Control"] == "no-store"
    assert busy.data["available"] is False
    assert busy.data["code"] == "BOOKING_OVERLAP"
    assert free.data["available"] is True


def test_availability_endpoint_validates_query(parking):
    resp = APIClient().get("/api/bookings/availability/", {"parking": parking.id, "start": "soon"})

    assert resp.status_code == 400


def test_booked_ranges_endpoint(parking, booking_factory, future_start):
    booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    resp = APIClient().get("/api/bookings/booked-ranges/", {"parking": parking.id})

    assert resp.status_code == 200
    assert len(resp.data) == 1
    assert APIClient().get("/api/bookings/booked-ranges/").status_code == 400


def test_pending_payment_lookup(parking, booking_factory, renter_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    resp = auth(renter_user).get("/api/bookings/pending-payment/", {"parking": parking.id})

    assert resp.status_code == 200
    assert resp.data["booking"]["id"] == booking.id


def test_checkout_creates_then_reuses_session(monkeypatch, booking_factory, renter_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))
    created = []

    def fake_create(**kwargs):
        created.append(kwargs)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

    def fake_retrieve(session_id):
        return SimpleNamespace(id=session_id, status="open", url=f"https://checkout.stripe.test/{session_id}")

    monkeypatch.setattr(
        stripe_api.stripe.checkout,
        "Session",
        SimpleNamespace(create=fake_create, retrieve=fake_retrieve),
    )
    client = auth(renter_user)

    first = client.post(f"/api/bookings/{booking.id}/checkout/")
    second = client.post(f"/api/bookings/{booking.id}/checkout/")

    assert first.status_code == 200, first.data
    assert first.data["session_id"] == "cs_test_1"
    assert first.data["reused"] is False
    assert second.data["reused"] is True
    assert len(created) == 1
    line_item = created[0]["line_items"][0]["price_data"]
    assert line_item["currency"] == "chf"
    assert line_item["unit_amount"] == 1000
    assert created[0]["metadata"]["booking_id"] == str(booking.id)


def test_checkout_only_for_renter(booking_factory, owner_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    resp = auth(owner_user).post(f"/api/bookings/{booking.id}/checkout/")

    assert resp.status_code == 403


def test_checkout_rejects_expired_hold(booking_factory, renter_user, future_start):
    booking = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        payment_expires_at=timezone.now() - timedelta(minutes=1),
    )

    resp = auth(renter_user).post(f"/api/bookings/{booking.id}/checkout/")

    assert resp.status_code == 400
    booking.refresh_from_db()
    assert booking.status == Booking.Status.EXPIRED


def test_checkout_maps_transient_stripe_errors(monkeypatch, booking_factory, renter_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    def failing_create(booking_arg):
        raise stripe_api.StripeTransientError("Temporary Stripe error, please retry.")

    monkeypatch.setattr("bookings.domain.create_checkout_session", failing_create)

    resp = auth(renter_user).post(f"/api/bookings/{booking.id}/checkout/")

    assert resp.status_code == 503


def test_confirm_payment_verifies_with_stripe(monkeypatch, booking_factory, renter_user, future_start):
    booking = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        stripe_session_id="cs_paid",
    )
    sessions = {
        "cs_paid": {
            "id": "cs_paid",
            "payment_status": "paid",
            "payment_intent": "pi_paid",
            "metadata": {"booking_id": str(booking.id)},
        },
        "cs_unpaid": {
            "id": "cs_unpaid",
            "payment_status": "unpaid",
            "payment_intent": None,
            "metadata": {"booking_id": str(booking.id)},
        },
    }
    monkeypatch.setattr("bookings.domain.retrieve_checkout_session", lambda session_id: sessions[session_id])
    client = auth(renter_user)

    unpaid = client.post(
        f"/api/bookings/{booking.id}/confirm-payment/", {"session_id": "cs_unpaid"}, format="json"
    )
    assert unpaid.status_code == 400

    paid = client.post(f"/api/bookings/{booking.id}/confirm-payment/", {}, format="json")
    assert paid.status_code == 200, paid.data
    assert paid.data["status"] == "confirmed"
    assert paid.data["payment_status"] == "paid"


def test_cancel_preview_and_cancel(monkeypatch, booking_factory, renter_user, future_start):
    booking = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        status=Booking.Status.CONFIRMED,
        payment_status=Booking.PaymentStatus.PAID,
        payment_reference="pi_api",
    )
    monkeypatch.setattr(
        "payments_refunds.issue_refund",
        lambda **kwargs: {"id": "re_api", "status": "succeeded"},
    )
    client = auth(renter_user)

    preview = client.get(f"/api/bookings/{booking.id}/cancel-preview/")
    assert preview.status_code == 200
    assert preview.data["refund"] is True
    assert preview.data["reason_code"] == "before_cutoff"

    resp = client.post(f"/api/bookings/{booking.id}/cancel/", {}, format="json")
    assert resp.status_code == 200, resp.data
    assert resp.data["refunded"] is True
    assert resp.data["already"] is False
    assert resp.data["booking"]["lifecycle_state"] == "cancelled_by_renter"
    assert resp.data["booking"]["payment_status"] == "refunded"

    again = client.post(f"/api/bookings/{booking.id}/cancel/", {}, format="json")
    assert again.status_code == 200
    assert again.data["already"] is True


def test_cancel_with_wrong_role_forbidden(booking_factory, renter_user, future_start):
    booking = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    resp = auth(renter_user).post(f"/api/bookings/{booking.id}/cancel/", {"role": "owner"}, format="json")

    assert resp.status_code == 403


def test_retry_refund_is_staff_only(booking_factory, renter_user, staff_user, future_start, monkeypatch):
    booking = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        status=Booking.Status.CANCELLED,
        payment_status=Booking.PaymentStatus.REFUNDING,
        refund_status=Booking.RefundStatus.FAILED,
        payment_reference="pi_retry",
    )
    monkeypatch.setattr(
        "payments_refunds.issue_refund",
        lambda **kwargs: {"id": "re_retry", "status": "succeeded"},
    )

    assert auth(renter_user).post(f"/api/bookings/{booking.id}/retry-refund/").status_code == 403

    resp = auth(staff_user).post(f"/api/bookings/{booking.id}/retry-refund/")

    assert resp.status_code == 200, resp.data
    assert resp.data["refund_status"] == "refunded"


def test_list_filters_by_status_and_upcoming(booking_factory, renter_user, future_start):
    pending = booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))
    confirmed = booking_factory(
        start_time=future_start + timedelta(hours=2),
        end_time=future_start + timedelta(hours=3),
        status=Booking.Status.CONFIRMED,
        payment_status=Booking.PaymentStatus.PAID,
    )
    past_start = timezone.now() - timedelta(days=1)
    finished = booking_factory(
        start_time=past_start,
        end_time=past_start + timedelta(hours=1),
        status=Booking.Status.CONFIRMED,
        payment_status=Booking.PaymentStatus.PAID,
    )
    client = auth(renter_user)

    by_status = [item["id"] for item in client.get("/api/bookings/", {"status": "pending_payment"}).data]
    upcoming = {item["id"] for item in client.get("/api/bookings/", {"upcoming": "true"}).data}
    past = [item["id"] for item in client.get("/api/bookings/", {"upcoming": "false"}).data]

    assert by_status == [pending.id]
    assert upcoming == {pending.id, confirmed.id}
    assert past == [finished.id]
