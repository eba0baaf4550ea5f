from datetime import timedelta

import pytest
from celery.schedules import crontab
from django.utils import timezone

from bookings.models import Booking
from bookings.tasks import expire_pending_payments

pytestmark = pytest.mark.django_db


def test_expire_pending_payments_releases_lapsed_holds(booking_factory, future_start):
    lapsed = booking_factory(
        start_time=future_start,
        end_time=future_start + timedelta(hours=1),
        payment_expires_at=timezone.now() - timedelta(seconds=1),
    )
    live = booking_factory(
        start_time=future_start + timedelta(hours=2),
        end_time=future_start + timedelta(hours=3),
    )
    paid = booking_factory(
        start_time=future_start + timedelta(hours=4),
        end_time=future_start + timedelta(hours=5),
        status=Booking.Status.CONFIRMED,
        payment_status=Booking.PaymentStatus.PAID,
    )

    assert expire_pending_payments.delay().get() == 1

    lapsed.refresh_from_db()
    live.refresh_from_db()
    paid.refresh_from_db()
    assert lapsed.status == Booking.Status.EXPIRED
    assert live.status == Booking.Status.PENDING_PAYMENT
    assert paid.status == Booking.Status.CONFIRMED


def test_expire_pending_payments_is_a_noop_when_nothing_lapsed(booking_factory, future_start):
    booking_factory(start_time=future_start, end_time=future_start + timedelta(hours=1))

    assert expire_pending_payments() == 0


def test_expire_task_is_scheduled_every_minute(settings):
    schedule = settings.CELERY_BEAT_SCHEDULE

    entries = [entry for entry in schedule.values() if entry["task"] == "bookings.expire_pending_payments"]
    assert len(entries) == 1
    assert entries[0]["schedule"] == crontab()
