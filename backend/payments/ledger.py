"""Transaction log and owner earnings aggregation."""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .models import Transaction

logger = logging.getLogger(__name__)
User = get_user_model()
TWO_PLACES = Decimal("0.01")


def log_transaction(
    *,
    user: User,
    booking,
    kind: str,
    amount: Decimal,
    currency: str | None = None,
    stripe_id: Optional[str] = None,
) -> Transaction:
    """
    Create and return a Transaction row.

    This is a thin helper; callers own the idempotency checks.
    """
    return Transaction.objects.create(
        user=user,
        booking=booking,
        kind=kind,
        amount=amount,
        currency=currency or getattr(settings, "BOOKING_CURRENCY", "CHF"),
        stripe_id=stripe_id,
    )


def platform_fee_rate() -> Decimal:
    return Decimal(str(getattr(settings, "PLATFORM_FEE_RATE", "0.15")))


def owner_net(gross: Decimal, rate: Decimal | None = None) -> Decimal:
    """Return the owner's share of a booking total, rounded to cents."""
    if rate is None:
        rate = platform_fee_rate()
    return (Decimal(gross) * (Decimal("1") - rate)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _format(value: Decimal) -> str:
    return f"{value.quantize(TWO_PLACES)}"


def earning_bookings_queryset(owner: User):
    """Bookings that count towards an owner's earnings: paid and not cancelled."""
    from bookings.models import Booking

    return (
        Booking.objects.filter(
            parking__owner=owner,
            payment_status=Booking.PaymentStatus.PAID,
        )
        .exclude(status=Booking.Status.CANCELLED)
        .order_by("start_time", "id")
    )


def _paid_out_booking_ids(bookings) -> set[int]:
    return set(
        Transaction.objects.filter(
            kind=Transaction.Kind.OWNER_PAYOUT,
            booking__in=bookings,
        ).values_list("booking_id", flat=True)
    )


def compute_owner_wallet(owner: User, *, now: datetime | None = None) -> dict[str, str]:
    """
    Split an owner's net earnings into pending, available and paid-out buckets.

    A booking is paid out once an OWNER_PAYOUT transaction exists for it,
    available once its window has ended, and pending otherwise.
    """
    now = now or timezone.now()
    rate = platform_fee_rate()
    bookings = list(earning_bookings_queryset(owner))
    paid_out_ids = _paid_out_booking_ids([booking.id for booking in bookings])

    pending = Decimal("0.00")
    available = Decimal("0.00")
    paid_out = Decimal("0.00")
    gross_total = Decimal("0.00")

    for booking in bookings:
        gross = Decimal(booking.total_price)
        net = owner_net(gross, rate)
        gross_total += gross
        if booking.id in paid_out_ids:
            paid_out += net
        elif booking.end_time <= now:
            available += net
        else:
            pending += net

    return {
        "currency": getattr(settings, "BOOKING_CURRENCY", "CHF"),
        "pending": _format(pending),
        "available": _format(available),
        "paid_out": _format(paid_out),
        "total": _format(pending + available + paid_out),
        "gross_total": _format(gross_total),
        "platform_fee_rate": str(rate),
    }


def compute_monthly_earnings(owner: User) -> list[dict[str, str]]:
    """Return owner net earnings grouped by the local month of each booking's start."""
    rate = platform_fee_rate()
    totals: "OrderedDict[str, Decimal]" = OrderedDict()
    for booking in earning_bookings_queryset(owner):
        month = timezone.localtime(booking.start_time).strftime("%Y-%m")
        totals[month] = totals.get(month, Decimal("0.00")) + owner_net(booking.total_price, rate)
    return [{"month": month, "total": _format(total)} for month, total in sorted(totals.items())]


def record_owner_payout(booking, *, stripe_id: Optional[str] = None) -> tuple[Transaction, bool]:
    """
    Record that the owner's share of a booking was paid out.

    Returns (transaction, created); a second call returns the existing row.
    """
    from bookings.models import Booking

    with transaction.atomic():
        locked = Booking.objects.select_for_update().select_related("parking__owner").get(pk=booking.pk)
        if (
            locked.payment_status != Booking.PaymentStatus.PAID
            or locked.status == Booking.Status.CANCELLED
        ):
            raise ValidationError({"booking": ["Only paid, active bookings can be paid out."]})
        existing = Transaction.objects.filter(
            booking=locked, kind=Transaction.Kind.OWNER_PAYOUT
        ).first()
        if existing is not None:
            return existing, False
        payout = log_transaction(
            user=locked.parking.owner,
            booking=locked,
            kind=Transaction.Kind.OWNER_PAYOUT,
            amount=owner_net(locked.total_price),
            currency=locked.currency,
            stripe_id=stripe_id,
        )
    logger.info("ledger: recorded owner payout for booking %s", locked.id)
    return payout, True


def due_payout_bookings(*, now: datetime | None = None):
    """Ended, paid, non-cancelled bookings with no owner payout recorded yet."""
    from bookings.models import Booking

    now = now or timezone.now()
    return (
        Booking.objects.filter(
            payment_status=Booking.PaymentStatus.PAID,
            end_time__lte=now,
            parking__owner__payout_account__payouts_enabled=True,
        )
        .exclude(status=Booking.Status.CANCELLED)
        .exclude(transactions__kind=Transaction.Kind.OWNER_PAYOUT)
        .select_related("parking__owner")
        .order_by("end_time", "id")
    )


def transfer_owner_payout(booking, *, now: datetime | None = None) -> tuple[Transaction, bool]:
    """
    Send the owner's share of an ended booking to their Connect account.

    The Stripe transfer is keyed on the booking, so a retry after a crash
    between the transfer and the ledger write reuses the same transfer.
    Returns (transaction, created) like ``record_owner_payout``.
    """
    from bookings.models import Booking

    from .models import OwnerPayoutAccount
    from .stripe_api import create_owner_transfer

    now = now or timezone.now()
    booking = Booking.objects.select_related("parking__owner").get(pk=booking.pk)
    existing = Transaction.objects.filter(booking=booking, kind=Transaction.Kind.OWNER_PAYOUT).first()
    if existing is not None:
        return existing, False
    if (
        booking.payment_status != Booking.PaymentStatus.PAID
        or booking.status == Booking.Status.CANCELLED
    ):
        raise ValidationError({"booking": ["Only paid, active bookings can be paid out."]})
    if booking.end_time > now:
        raise ValidationError({"booking": ["Bookings are paid out once they have ended."]})

    owner = booking.parking.owner
    payout_account = OwnerPayoutAccount.objects.filter(user=owner).first()
    if payout_account is None or not payout_account.payouts_enabled:
        raise ValidationError({"owner": ["Owner has not finished payout onboarding."]})

    transfer_id = create_owner_transfer(
        booking=booking,
        amount=owner_net(booking.total_price),
        destination=payout_account.stripe_account_id,
    )
    logger.info("ledger: transfer %s sent for booking %s", transfer_id, booking.id)
    return record_owner_payout(booking, stripe_id=transfer_id)
