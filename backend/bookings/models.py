"""Database models for parking bookings."""

from __future__ import annotations

from datetime import datetime

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from parkings.models import Parking


class Booking(models.Model):
    """A renter's reservation of a parking for a half-open [start_time, end_time) window."""

    class Status(models.TextChoices):
        PENDING_PAYMENT = "pending_payment", "pending payment"
        CONFIRMED = "confirmed", "confirmed"
        CANCELLED = "cancelled", "cancelled"
        EXPIRED = "expired", "expired"

    class PaymentStatus(models.TextChoices):
        UNPAID = "unpaid", "unpaid"
        PAID = "paid", "paid"
        REFUNDING = "refunding", "refunding"
        REFUNDED = "refunded", "refunded"

    class CancelledBy(models.TextChoices):
        RENTER = "renter", "renter"
        OWNER = "owner", "owner"

    class RefundStatus(models.TextChoices):
        NONE = "none", "none"
        REQUESTED = "requested", "requested"
        REFUNDED = "refunded", "refunded"
        FAILED = "failed", "failed"

    parking = models.ForeignKey(
        Parking,
        related_name="bookings",
        on_delete=models.PROTECT,
    )
    renter = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="bookings_as_renter",
        on_delete=models.CASCADE,
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField(help_text="Exclusive end of the booked window.")
    total_price = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="CHF")
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING_PAYMENT,
    )
    payment_status = models.CharField(
        max_length=16,
        choices=PaymentStatus.choices,
        default=PaymentStatus.UNPAID,
    )
    payment_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Pending-payment hold is released after this instant.",
    )
    stripe_session_id = models.CharField(max_length=255, blank=True, default="")
    payment_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe PaymentIntent id used to refund the charge.",
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(
        max_length=8,
        choices=CancelledBy.choices,
        blank=True,
        default="",
    )
    refund_status = models.CharField(
        max_length=16,
        choices=RefundStatus.choices,
        default=RefundStatus.NONE,
    )
    refund_reason_code = models.CharField(max_length=32, blank=True, default="")
    refund_id = models.CharField(max_length=255, blank=True, default="")
    refund_error = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["parking", "start_time", "end_time"], name="booking_parking_window_idx"),
            models.Index(fields=["renter", "status"], name="booking_renter_status_idx"),
            models.Index(fields=["status", "payment_expires_at"], name="booking_status_expiry_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F("start_time")),
                name="booking_end_after_start",
            ),
        ]

    def __str__(self) -> str:
        """Return a human-readable representation."""
        return f"Booking #{self.pk} for parking {self.parking_id} ({self.status})"

    @property
    def duration_hours(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds() / 3600

    def is_payment_hold_expired(self, now: datetime | None = None) -> bool:
        """Return True if the pending-payment hold no longer blocks the window."""
        if self.status != self.Status.PENDING_PAYMENT or self.payment_expires_at is None:
            return False
        return self.payment_expires_at <= (now or timezone.now())

    def is_blocking(self, now: datetime | None = None) -> bool:
        """Return True if the booking currently occupies its window."""
        if self.status == self.Status.CONFIRMED:
            return True
        return self.status == self.Status.PENDING_PAYMENT and not self.is_payment_hold_expired(now)

    def is_terminal(self) -> bool:
        """Return True if the booking reached a terminal state."""
        return self.status in {self.Status.CANCELLED, self.Status.EXPIRED}

    def is_completed(self, now: datetime | None = None) -> bool:
        return self.status == self.Status.CONFIRMED and self.end_time <= (now or timezone.now())

    def lifecycle_state(self, now: datetime | None = None) -> str:
        """Collapse status, cancelling party and time into the user-facing lifecycle."""
        if self.status == self.Status.CANCELLED:
            return f"cancelled_by_{self.cancelled_by or self.CancelledBy.RENTER}"
        if self.is_completed(now):
            return "completed"
        return self.status
