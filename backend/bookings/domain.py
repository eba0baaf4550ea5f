"""Domain helpers for booking availability, creation and state transitions."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from django.conf import settings
from django.core.exceptions import PermissionDenied, ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.http import Http404
from django.shortcuts import get_object_or_404
from django.utils import timezone

from notifications import tasks as notification_tasks
from parkings.availability import overlapping_blackouts, window_within_availability
from parkings.models import Parking
from parkings.services import compute_booking_price
from payments.ledger import log_transaction
from payments.models import Transaction
from payments.stripe_api import (
    StripePaymentError,
    _value,
    checkout_session_is_paid,
    checkout_session_payment_reference,
    create_checkout_session,
    retrieve_checkout_session,
)
from payments_cancellation_policy import (
    REASON_EXPIRED_BEFORE_PAYMENT,
    RefundDecision,
    decide_refund,
    refund_cutoff_hours,
    refund_deadline,
)
from payments_refunds import apply_refund

from .models import Booking

logger = logging.getLogger(__name__)

CancelRole = Literal["renter", "owner"]

CODE_PARKING_OFF = "PARKING_OFF"
CODE_BOOKING_OVERLAP = "BOOKING_OVERLAP"
CODE_OUTSIDE_AVAILABILITY = "OUTSIDE_AVAILABILITY"
CODE_BLACKOUT = "BLACKOUT"

AVAILABILITY_REASONS = {
    CODE_PARKING_OFF: "This parking is not available for booking.",
    CODE_BOOKING_OVERLAP: "This parking is already booked for the selected time.",
    CODE_OUTSIDE_AVAILABILITY: "The selected time is outside the parking's opening hours.",
    CODE_BLACKOUT: "The parking is closed during the selected time.",
}


class BookingConflict(ValidationError):
    """The requested window overlaps a booking that blocks the parking."""


@dataclass(frozen=True)
class AvailabilityCheck:
    available: bool
    code: str = ""
    reason: str = ""
    within_availability: bool = True
    blackout: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CancelResult:
    ok: bool
    refunded: bool
    already: bool
    refund_status: str
    reason_code: str

    def as_dict(self) -> dict:
        return asdict(self)


def pending_payment_ttl() -> timedelta:
    return timedelta(minutes=int(getattr(settings, "BOOKING_PENDING_PAYMENT_TTL_MINUTES", 10)))


def enforce_availability() -> bool:
    return bool(getattr(settings, "BOOKING_ENFORCE_AVAILABILITY", False))


def validate_booking_window(start_time: datetime | None, end_time: datetime | None) -> None:
    """Validate that the provided times exist and form a valid half-open window."""
    if not start_time or not end_time:
        raise ValidationError({"non_field_errors": ["Start and end times are required."]})
    if timezone.is_naive(start_time) or timezone.is_naive(end_time):
        raise ValidationError({"non_field_errors": ["Times must include a timezone offset."]})
    if start_time >= end_time:
        raise ValidationError({"end_time": ["End time must be after start time."]})


def blocking_bookings(
    parking_id: int,
    start_time: datetime,
    end_time: datetime,
    *,
    now: datetime | None = None,
    exclude_booking_id: Optional[int] = None,
):
    """
    Bookings on the parking that overlap [start_time, end_time) and hold it.

    Confirmed bookings always hold their window; pending-payment bookings hold
    it until ``payment_expires_at``. Touching windows do not overlap.
    """
    now = now or timezone.now()
    holding = Q(status=Booking.Status.CONFIRMED) | (
        Q(status=Booking.Status.PENDING_PAYMENT)
        & (Q(payment_expires_at__isnull=True) | Q(payment_expires_at__gt=now))
    )
    qs = Booking.objects.filter(
        holding,
        parking_id=parking_id,
        start_time__lt=end_time,
        end_time__gt=start_time,
    )
    if exclude_booking_id is not None:
        qs = qs.exclude(pk=exclude_booking_id)
    return qs


def is_available(
    parking_id: int,
    start_time: datetime,
    end_time: datetime,
    *,
    now: datetime | None = None,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """Return True if no blocking booking overlaps the window."""
    return not blocking_bookings(
        parking_id,
        start_time,
        end_time,
        now=now,
        exclude_booking_id=exclude_booking_id,
    ).exists()


def check_availability(
    parking: Parking,
    start_time: datetime,
    end_time: datetime,
    *,
    now: datetime | None = None,
) -> AvailabilityCheck:
    """
    Explain whether ``parking`` can be booked for the window.

    The weekly template and blackouts are reported in ``within_availability``
    and ``blackout``; they only make the window unavailable when
    ``BOOKING_ENFORCE_AVAILABILITY`` is enabled.
    """
    if not parking.is_active:
        return AvailabilityCheck(
            available=False,
            code=CODE_PARKING_OFF,
            reason=AVAILABILITY_REASONS[CODE_PARKING_OFF],
        )

    within = window_within_availability(
        start_time, end_time, list(parking.availability_slots.all())
    )
    blackout = overlapping_blackouts(parking, start_time, end_time).exists()

    code = ""
    if not is_available(parking.id, start_time, end_time, now=now):
        code = CODE_BOOKING_OVERLAP
    elif enforce_availability() and blackout:
        code = CODE_BLACKOUT
    elif enforce_availability() and not within:
        code = CODE_OUTSIDE_AVAILABILITY

    return AvailabilityCheck(
        available=not code,
        code=code,
        reason=AVAILABILITY_REASONS.get(code, ""),
        within_availability=within,
        blackout=blackout,
    )


def booked_ranges(parking_id: int, *, now: datetime | None = None) -> list[dict[str, str]]:
    """Return the blocking [start, end) ranges of a parking that end after now."""
    now = now or timezone.now()
    far_future = now + timedelta(days=3650)
    qs = blocking_bookings(parking_id, now, far_future, now=now).order_by("start_time")
    return [
        {"start": booking.start_time.isoformat(), "end": booking.end_time.isoformat()}
        for booking in qs
    ]


def _expire_stale_overlapping(
    parking_id: int,
    start_time: datetime,
    end_time: datetime,
    now: datetime,
    *,
    exclude_booking_id: Optional[int] = None,
) -> int:
    """Expire lapsed pending holds on the window so they stop counting as overlaps."""
    qs = Booking.objects.filter(
        parking_id=parking_id,
        status=Booking.Status.PENDING_PAYMENT,
        payment_status=Booking.PaymentStatus.UNPAID,
        payment_expires_at__lte=now,
        start_time__lt=end_time,
        end_time__gt=start_time,
    )
    if exclude_booking_id is not None:
        qs = qs.exclude(pk=exclude_booking_id)
    return qs.update(status=Booking.Status.EXPIRED, updated_at=now)



def _parse_expected_price(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError({"expected_price": ["Enter a valid amount."]}) from exc


def create_booking(
    *,
    renter,
    parking_id: int,
    start_time: datetime,
    end_time: datetime,
    expected_price=None,
    currency: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """
    Create a pending-payment booking after re-checking overlaps under a parking lock.

    The total is always recomputed from the parking's rates; a differing
    client-side ``expected_price`` is logged and ignored.
    """
    now = now or timezone.now()
    validate_booking_window(start_time, end_time)
    if start_time < now:
        raise ValidationError({"start_time": ["Start time cannot be in the past."]})
    if not getattr(renter, "can_rent", True):
        raise PermissionDenied("This account is not allowed to book parkings.")
    booking_currency = getattr(settings, "BOOKING_CURRENCY", "CHF")
    if currency and currency.upper() != booking_currency:
        raise ValidationError({"currency": [f"Bookings are charged in {booking_currency}."]})
    expected = _parse_expected_price(expected_price)

    try:
        with transaction.atomic():
            parking = (
                Parking.objects.select_for_update()
                .filter(pk=parking_id, is_active=True)
                .first()
            )
            if parking is None:
                raise Http404("Parking not found.")
            if parking.owner_id == renter.id:
                raise ValidationError({"parking": ["You cannot book your own parking."]})

            expired = _expire_stale_overlapping(parking.id, start_time, end_time, now)
            if expired:
                logger.info("bookings: expired %s stale pending hold(s) on parking %s", expired, parking.id)

            check = check_availability(parking, start_time, end_time, now=now)
            if check.code == CODE_BOOKING_OVERLAP:
                raise BookingConflict({"non_field_errors": [check.reason]})
            if not check.available:
                raise ValidationError({"non_field_errors": [check.reason]})

            total_price = compute_booking_price(
                parking=parking, start_time=start_time, end_time=end_time
            )
            if expected is not None and expected != total_price:
                logger.info(
                    "bookings: client price %s differs from server price %s for parking %s",
                    expected,
                    total_price,
                    parking.id,
                )

            booking = Booking.objects.create(
                parking=parking,
                renter=renter,
                start_time=start_time,
                end_time=end_time,
                total_price=total_price,
                currency=booking_currency,
                status=Booking.Status.PENDING_PAYMENT,
                payment_status=Booking.PaymentStatus.UNPAID,
                payment_expires_at=now + pending_payment_ttl(),
            )
    except IntegrityError as exc:
        logger.warning("bookings: overlap rejected by database for parking %s", parking_id)
        raise BookingConflict(
            {"non_field_errors": [AVAILABILITY_REASONS[CODE_BOOKING_OVERLAP]]}
        ) from exc

    logger.info(
        "bookings: created booking %s on parking %s for renter %s",
        booking.id,
        booking.parking_id,
        renter.id,
    )
    return booking


def payment_seconds_remaining(booking: Booking, now: datetime | None = None) -> int:
    """Seconds left to pay a pending booking; 0 once the hold lapsed."""
    if booking.status != Booking.Status.PENDING_PAYMENT or booking.payment_expires_at is None:
        return 0
    remaining = (booking.payment_expires_at - (now or timezone.now())).total_seconds()
    return max(0, math.ceil(remaining))


def find_pending_payment(renter, parking_id: int, *, now: datetime | None = None) -> Booking | None:
    """Return the renter's unexpired pending booking on a parking, if any."""
    now = now or timezone.now()
    return (
        Booking.objects.filter(
            renter=renter,
            parking_id=parking_id,
            status=Booking.Status.PENDING_PAYMENT,
            payment_status=Booking.PaymentStatus.UNPAID,
            payment_expires_at__gt=now,
        )
        .order_by("-created_at")
        .first()
    )


def expire_pending(booking_id: int, *, now: datetime | None = None, force: bool = False) -> bool:
    """
    Move an unpaid pending booking to ``expired`` once its hold lapsed.

    ``force`` skips the TTL check; it is used when Stripe reports the checkout
    session expired. Returns True if the booking changed.
    """
    now = now or timezone.now()
    with transaction.atomic():
        booking = Booking.objects.select_for_update().filter(pk=booking_id).first()
        if booking is None:
            return False
        if (
            booking.status != Booking.Status.PENDING_PAYMENT
            or booking.payment_status != Booking.PaymentStatus.UNPAID
        ):
            return False
        if not force and (booking.payment_expires_at is None or booking.payment_expires_at > now):
            return False
        booking.status = Booking.Status.EXPIRED
        booking.save(update_fields=["status", "updated_at"])
    logger.info("bookings: booking %s expired before payment", booking_id)
    return True


def expire_stale_pending(now: datetime | None = None) -> int:
    """Expire every pending booking whose payment hold lapsed."""
    now = now or timezone.now()
    stale_ids = list(
        Booking.objects.filter(
            status=Booking.Status.PENDING_PAYMENT,
            payment_status=Booking.PaymentStatus.UNPAID,
            payment_expires_at__lte=now,
        ).values_list("id", flat=True)
    )
    return sum(1 for booking_id in stale_ids if expire_pending(booking_id, now=now))


def _queue_notification(task_name: str, booking_id: int) -> None:
    try:
        getattr(notification_tasks, task_name).delay(booking_id)
    except Exception:
        logger.info(
            "notifications: could not queue %s for booking %s",
            task_name,
            booking_id,
            exc_info=True,
        )


def mark_cancelled(
    booking: Booking,
    *,
    cancelled_by: CancelRole,
    decision: RefundDecision,
    now: datetime,
) -> None:
    """Apply cancellation fields to a locked booking row and save it."""
    booking.status = Booking.Status.CANCELLED
    booking.cancelled_at = booking.cancelled_at or now
    booking.cancelled_by = booking.cancelled_by or cancelled_by
    booking.refund_reason_code = decision.reason_code
    update_fields = [
        "status",
        "cancelled_at",
        "cancelled_by",
        "refund_reason_code",
        "updated_at",
    ]
    if decision.refund:
        booking.payment_status = Booking.PaymentStatus.REFUNDING
        booking.refund_status = Booking.RefundStatus.REQUESTED
        update_fields += ["payment_status", "refund_status"]
    booking.save(update_fields=update_fields)


def _reinstate_after_lapse(booking: Booking, now: datetime) -> bool:
    """
    Confirm a booking whose hold lapsed before payment, if its window is still free.

    Must run inside the caller's transaction with the booking row locked.
    Returns False when another booking took the window.
    """
    Parking.objects.select_for_update().filter(pk=booking.parking_id).first()
    _expire_stale_overlapping(
        booking.parking_id,
        booking.start_time,
        booking.end_time,
        now,
        exclude_booking_id=booking.id,
    )
    if not is_available(
        booking.parking_id,
        booking.start_time,
        booking.end_time,
        now=now,
        exclude_booking_id=booking.id,
    ):
        return False

    previous_status = booking.status
    booking.status = Booking.Status.CONFIRMED
    try:
        with transaction.atomic():
            booking.save(update_fields=["status", "updated_at"])
    except IntegrityError:
        booking.status = previous_status
        logger.warning("bookings: overlap constraint refused reinstating booking %s", booking.id)
        return False
    logger.info("bookings: reinstated booking %s after late payment", booking.id)
    return True


def confirm_payment(
    booking_id: int,
    payment_reference: str,
    *,
    session_id: str = "",
    now: datetime | None = None,
) -> Booking:
    """
    Record a successful payment and confirm the booking.

    Idempotent: a booking that is no longer unpaid is returned unchanged.
    A payment arriving after the hold lapsed reinstates the booking when its
    window is still free; otherwise the booking is cancelled on the owner's
    side and refunded in full.
    """
    now = now or timezone.now()
    late_payment = False
    with transaction.atomic():
        booking = get_object_or_404(
            Booking.objects.select_for_update().select_related("parking", "renter"),
            pk=booking_id,
        )
        if booking.payment_status != Booking.PaymentStatus.UNPAID:
            logger.info("bookings: payment for booking %s already recorded", booking.id)
            return booking

        booking.payment_status = Booking.PaymentStatus.PAID
        booking.payment_reference = payment_reference or booking.payment_reference
        booking.stripe_session_id = session_id or booking.stripe_session_id
        booking.paid_at = now

        if booking.status == Booking.Status.EXPIRED or booking.is_payment_hold_expired(now):
            late_payment = not _reinstate_after_lapse(booking, now)
        elif booking.status == Booking.Status.PENDING_PAYMENT:
            booking.status = Booking.Status.CONFIRMED
        elif booking.status == Booking.Status.CANCELLED:
            late_payment = True

        booking.save(
            update_fields=[
                "status",
                "payment_status",
                "payment_reference",
                "stripe_session_id",
                "paid_at",
                "updated_at",
            ]
        )
        log_transaction(
            user=booking.renter,
            booking=booking,
            kind=Transaction.Kind.BOOKING_CHARGE,
            amount=booking.total_price,
            currency=booking.currency,
            stripe_id=booking.payment_reference or booking.stripe_session_id or None,
        )
        if late_payment:
            mark_cancelled(
                booking,
                cancelled_by=Booking.CancelledBy.OWNER,
                decision=RefundDecision(True, REASON_EXPIRED_BEFORE_PAYMENT),
                now=now,
            )

    if late_payment:
        logger.warning("bookings: booking %s paid after its window was lost; refunding", booking.id)
        apply_refund(booking)
        _queue_notification("send_booking_cancelled_email", booking.id)
    else:
        logger.info("bookings: booking %s confirmed", booking.id)
        _queue_notification("send_booking_confirmed_email", booking.id)
    booking.refresh_from_db()
    return booking


def _get_renter_booking(booking_id: int, renter) -> Booking:
    booking = get_object_or_404(
        Booking.objects.select_related("parking", "renter"), pk=booking_id
    )
    if booking.renter_id != renter.id:
        raise PermissionDenied("Only the renter can pay for this booking.")
    return booking


def start_checkout(booking_id: int, renter, *, now: datetime | None = None) -> dict:
    """
    Return a Stripe Checkout session for a pending booking.

    An open session created earlier is reused, so calling this again resumes
    the payment instead of creating a second charge.
    """
    now = now or timezone.now()
    booking = _get_renter_booking(booking_id, renter)
    if booking.is_payment_hold_expired(now):
        expire_pending(booking.id, now=now)
        booking.refresh_from_db()
    if (
        booking.status != Booking.Status.PENDING_PAYMENT
        or booking.payment_status != Booking.PaymentStatus.UNPAID
    ):
        raise ValidationError({"status": ["Only bookings awaiting payment can be paid."]})

    if booking.stripe_session_id:
        try:
            existing = retrieve_checkout_session(booking.stripe_session_id)
        except StripePaymentError:
            existing = None
            logger.info("bookings: stored checkout session for booking %s is gone", booking.id)
        url = _value(existing, "url")
        if _value(existing, "status") == "open" and url:
            return {
                "session_id": booking.stripe_session_id,
                "url": url,
                "payment_expires_at": booking.payment_expires_at,
                "reused": True,
            }

    session_id, url = create_checkout_session(booking)
    booking.stripe_session_id = session_id
    booking.save(update_fields=["stripe_session_id", "updated_at"])
    logger.info("bookings: created checkout session for booking %s", booking.id)
    return {
        "session_id": session_id,
        "url": url,
        "payment_expires_at": booking.payment_expires_at,
        "reused": False,
    }


def verify_checkout(
    booking_id: int,
    renter,
    session_id: str = "",
    *,
    now: datetime | None = None,
) -> Booking:
    """Confirm a booking from the checkout redirect after asking Stripe if it was paid."""
    booking = _get_renter_booking(booking_id, renter)
    if booking.payment_status != Booking.PaymentStatus.UNPAID:
        return booking
    session_id = (session_id or booking.stripe_session_id or "").strip()
    if not session_id:
        raise ValidationError({"session_id": ["No checkout session to verify."]})

    session = retrieve_checkout_session(session_id)
    metadata = _value(session, "metadata") or {}
    if str(_value(metadata, "booking_id", "")) != str(booking.id):
        raise ValidationError({"session_id": ["Checkout session does not belong to this booking."]})
    if not checkout_session_is_paid(session):
        raise ValidationError({"payment": ["Payment has not been completed."]})

    return confirm_payment(
        booking.id,
        checkout_session_payment_reference(session),
        session_id=session_id,
        now=now,
    )


def resolve_cancel_role(actor, booking: Booking, role: str | None = None) -> CancelRole:
    """Return the side ``actor`` cancels on, checking they really hold that role."""
    is_renter = booking.renter_id == actor.id
    is_owner = booking.parking.owner_id == actor.id
    if role in (None, ""):
        if is_renter:
            return Booking.CancelledBy.RENTER
        if is_owner:
            return Booking.CancelledBy.OWNER
        raise PermissionDenied("You are not part of this booking.")
    if role not in (Booking.CancelledBy.RENTER, Booking.CancelledBy.OWNER):
        raise ValidationError({"role": ["Role must be 'renter' or 'owner'."]})
    if role == Booking.CancelledBy.RENTER and not is_renter:
        raise PermissionDenied("Only the renter can cancel as renter.")
    if role == Booking.CancelledBy.OWNER and not is_owner:
        raise PermissionDenied("Only the parking owner can cancel as owner.")
    return role


def _assert_cancellable(booking: Booking, now: datetime) -> None:
    if booking.status == Booking.Status.EXPIRED:
        raise ValidationError({"status": ["Expired bookings cannot be cancelled."]})
    if booking.is_completed(now):
        raise ValidationError({"status": ["Completed bookings cannot be cancelled."]})


def preview_cancellation(
    actor,
    booking_id: int,
    role: str | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """Describe what cancelling now would do, using the same rules as the cancel itself."""
    now = now or timezone.now()
    booking = get_object_or_404(Booking.objects.select_related("parking"), pk=booking_id)
    cancel_role = resolve_cancel_role(actor, booking, role)
    decision = decide_refund(booking=booking, cancelled_by=cancel_role, now=now)
    cancellable = booking.status in {
        Booking.Status.PENDING_PAYMENT,
        Booking.Status.CONFIRMED,
    } and not booking.is_completed(now)
    return {
        "booking_id": booking.id,
        "role": str(cancel_role),
        "cancellable": cancellable,
        "refund": decision.refund,
        "reason_code": decision.reason_code,
        "refund_amount": f"{booking.total_price if decision.refund else Decimal('0.00')}",
        "currency": booking.currency,
        "cutoff_hours": refund_cutoff_hours(),
        "refund_deadline": refund_deadline(booking).isoformat(),
    }


def cancel_booking(
    actor,
    booking_id: int,
    role: str | None = None,
    *,
    now: datetime | None = None,
) -> CancelResult:
    """
    Cancel a booking as renter or owner and trigger the refund it is owed.

    Cancelling an already-cancelled booking succeeds with ``already=True`` and
    has no side effects.
    """
    now = now or timezone.now()
    booking = get_object_or_404(Booking.objects.select_related("parking"), pk=booking_id)
    cancel_role = resolve_cancel_role(actor, booking, role)

    with transaction.atomic():
        locked = Booking.objects.select_for_update().select_related("parking").get(pk=booking.pk)
        if locked.status == Booking.Status.CANCELLED:
            return CancelResult(
                ok=True,
                refunded=locked.refund_status != Booking.RefundStatus.NONE,
                already=True,
                refund_status=locked.refund_status,
                reason_code=locked.refund_reason_code,
            )
        _assert_cancellable(locked, now)
        decision = decide_refund(booking=locked, cancelled_by=cancel_role, now=now)
        mark_cancelled(locked, cancelled_by=cancel_role, decision=decision, now=now)

    logger.info(
        "bookings: booking %s cancelled by %s (%s)",
        locked.id,
        cancel_role,
        decision.reason_code,
    )
    if decision.refund:
        locked = apply_refund(locked)
    _queue_notification("send_booking_cancelled_email", locked.id)
    return CancelResult(
        ok=True,
        refunded=decision.refund,
        already=False,
        refund_status=locked.refund_status,
        reason_code=decision.reason_code,
    )
