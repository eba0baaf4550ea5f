from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from bookings.models import Booking
from payments_cancellation_policy import (
    REASON_BEFORE_CUTOFF,
    REASON_LATE_CANCELLATION,
    REASON_NOT_PAID,
    REASON_OWNER_CANCELLED,
    decide_refund,
    refund_deadline,
)

START = datetime(2026, 5, 10, 10, 0, tzinfo=dt_timezone.utc)


def make_booking(payment_status=Booking.PaymentStatus.PAID):
    return Booking(
        start_time=START,
        end_time=START + timedelta(hours=2),
        total_price=Decimal("10.00"),
        status=Booking.Status.CONFIRMED,
        payment_status=payment_status,
    )


def test_refund_deadline_is_cutoff_before_start():
    assert refund_deadline(make_booking(), cutoff_hours=24) == START - timedelta(hours=24)


@pytest.mark.parametrize(
    "now, expected",
    [
        (START - timedelta(hours=48), (True, REASON_BEFORE_CUTOFF)),
        (START - timedelta(hours=24), (True, REASON_BEFORE_CUTOFF)),
        (START - timedelta(hours=23, minutes=59), (False, REASON_LATE_CANCELLATION)),
        (START + timedelta(minutes=30), (False, REASON_LATE_CANCELLATION)),
    ],
)
def test_renter_refund_depends_on_cutoff(now, expected):
    decision = decide_refund(booking=make_booking(), cancelled_by="renter", now=now, cutoff_hours=24)

    assert (decision.refund, decision.reason_code) == expected


def test_owner_cancellation_always_refunds():
    decision = decide_refund(
        booking=make_booking(),
        cancelled_by="owner",
        now=START - timedelta(minutes=10),
    )

    assert decision.refund is True
    assert decision.reason_code == REASON_OWNER_CANCELLED


@pytest.mark.parametrize("cancelled_by", ["renter", "owner"])
@pytest.mark.parametrize(
    "payment_status",
    [
        Booking.PaymentStatus.UNPAID,
        Booking.PaymentStatus.REFUNDING,
        Booking.PaymentStatus.REFUNDED,
    ],
)
def test_unpaid_bookings_never_refund(cancelled_by, payment_status):
    decision = decide_refund(
        booking=make_booking(payment_status),
        cancelled_by=cancelled_by,
        now=START - timedelta(days=5),
    )

    assert decision.refund is False
    assert decision.reason_code == REASON_NOT_PAID


def test_cutoff_follows_settings(settings):
    settings.RENTER_REFUND_CUTOFF_HOURS = 2

    decision = decide_refund(
        booking=make_booking(),
        cancelled_by="renter",
        now=START - timedelta(hours=3),
    )

    assert decision.refund is True
