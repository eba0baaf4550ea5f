"""Refund decisions for cancelled bookings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from django.conf import settings

from bookings.models import Booking

CancelledBy = Literal["renter", "owner"]

REASON_NOT_PAID = "not_paid"
REASON_OWNER_CANCELLED = "owner_cancelled"
REASON_BEFORE_CUTOFF = "before_cutoff"
REASON_LATE_CANCELLATION = "late_cancellation"
REASON_EXPIRED_BEFORE_PAYMENT = "expired_before_payment"


@dataclass(frozen=True)
class RefundDecision:
    """Whether a cancellation is refunded, and the code explaining why."""

    refund: bool
    reason_code: str


def refund_cutoff_hours() -> int:
    return int(getattr(settings, "RENTER_REFUND_CUTOFF_HOURS", 24))


def refund_deadline(booking: Booking, cutoff_hours: int | None = None) -> datetime:
    """Last instant at which a renter cancellation is still refunded."""
    if cutoff_hours is None:
        cutoff_hours = refund_cutoff_hours()
    return booking.start_time - timedelta(hours=cutoff_hours)


def decide_refund(
    *,
    booking: Booking,
    cancelled_by: CancelledBy,
    now: datetime,
    cutoff_hours: int | None = None,
) -> RefundDecision:
    """
    Decide whether cancelling ``booking`` refunds the renter in full.

    Unpaid bookings never refund. Owner cancellations always refund. Renter
    cancellations refund up to ``cutoff_hours`` before the start, inclusive.
    Reads only the booking's payment status and start time.
    """
    if booking.payment_status != Booking.PaymentStatus.PAID:
        return RefundDecision(False, REASON_NOT_PAID)
    if cancelled_by == Booking.CancelledBy.OWNER:
        return RefundDecision(True, REASON_OWNER_CANCELLED)
    if now <= refund_deadline(booking, cutoff_hours):
        return RefundDecision(True, REASON_BEFORE_CUTOFF)
    return RefundDecision(False, REASON_LATE_CANCELLATION)
