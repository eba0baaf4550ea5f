"""Shared pytest configuration and fixtures."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Callable

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from bookings.models import Booking
from parkings.models import Parking

User = get_user_model()


def _create_user(*, username: str, can_list: bool = True, can_rent: bool = True, **extra) -> User:
    return User.objects.create_user(
        username=username,
        email=f"{username}@example.com",
        password="testpass",
        can_list=can_list,
        can_rent=can_rent,
        **extra,
    )


@pytest.fixture
def api_client():
    """DRF API client for request/response helpers."""
    return APIClient()


@pytest.fixture
def owner_user(db):
    return _create_user(username="owner", first_name="Olivia", last_name="Owner")


@pytest.fixture
def renter_user(db):
    return _create_user(username="renter", can_list=False, first_name="Rita", last_name="Renter")


@pytest.fixture
def other_user(db):
    return _create_user(username="other")


@pytest.fixture
def staff_user(db):
    return _create_user(username="staff", is_staff=True)


@pytest.fixture
def parking(owner_user):
    return Parking.objects.create(
        owner=owner_user,
        title="Covered spot near Lausanne station",
        description="Underground spot, level -2.",
        street_address="Avenue de la Gare 10",
        postal_code="1003",
        city="Lausanne",
        parking_type=Parking.ParkingType.GARAGE,
        is_covered=True,
        price_hour=Decimal("5.00"),
        price_day=None,
        is_active=True,
    )


@pytest.fixture
def future_start():
    """A whole hour two days from now, far from any refund cutoff."""
    return (timezone.now() + timedelta(days=2)).replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def booking_factory(parking, renter_user) -> Callable[..., Booking]:
    def _create_booking(
        *,
        parking_override: Parking | None = None,
        renter=None,
        start_time,
        end_time,
        status=Booking.Status.PENDING_PAYMENT,
        payment_status=Booking.PaymentStatus.UNPAID,
        total_price=Decimal("10.00"),
        **extra_fields,
    ) -> Booking:
        selected_parking = parking_override or parking
        if status == Booking.Status.PENDING_PAYMENT and "payment_expires_at" not in extra_fields:
            extra_fields["payment_expires_at"] = timezone.now() + timedelta(minutes=10)
        return Booking.objects.create(
            parking=selected_parking,
            renter=renter or renter_user,
            start_time=start_time,
            end_time=end_time,
            status=status,
            payment_status=payment_status,
            total_price=total_price,
            currency="CHF",
            **extra_fields,
        )

    return _create_booking
