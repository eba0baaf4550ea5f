"""Execute booking refunds via Stripe and record the outcome in the ledger."""

from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from bookings.models import Booking
from payments.ledger import log_transaction
from payments.models import Transaction
from payments.stripe_api import (
    StripeConfigurationError,
    StripePaymentError,
    StripeTransientError,
    issue_refund,
)

logger = logging.getLogger(__name__)

REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED_STATES = {"failed", "canceled"}


def refund_idempotency_key(booking: Booking) -> str:
    return f"booking:{booking.id}:refund"


def _awaiting_refund(booking: Booking) -> bool:
    return booking.payment_status == Booking.PaymentStatus.REFUNDING and booking.refund_status in {
        Booking.RefundStatus.REQUESTED,
        Booking.RefundStatus.FAILED,
    }


def _mark_refunded(booking: Booking, refund_id: str) -> None:
    """Finalize a refund on a locked booking row and log it once."""
    booking.payment_status = Booking.PaymentStatus.REFUNDED
    booking.refund_status = Booking.RefundStatus.REFUNDED
    booking.refund_id = refund_id or booking.refund_id
    booking.refund_error = ""
    booking.save(
        update_fields=["payment_status", "refund_status", "refund_id", "refund_error", "updated_at"]
    )
    already_logged = Transaction.objects.filter(
        booking=booking, kind=Transaction.Kind.REFUND
    ).exists()
    if not already_logged:
        log_transaction(
            user=booking.renter,
            booking=booking,
            kind=Transaction.Kind.REFUND,
            amount=-booking.total_price,
            currency=booking.currency,
            stripe_id=booking.refund_id or booking.payment_reference or None,
        )
    logger.info("refunds: booking %s refunded (%s)", booking.id, booking.refund_id or "no id")


def _mark_failed(booking: Booking, error: str) -> None:
    booking.refund_status = Booking.RefundStatus.FAILED
    booking.refund_error = error[:2000]
    booking.save(update_fields=["refund_status", "refund_error", "updated_at"])
    logger.warning("refunds: refund for booking %s failed: %s", booking.id, error)


def apply_refund(booking: Booking) -> Booking:
    """
    Issue the full refund for a cancelled booking awaiting one.

    The cancellation itself is never rolled back: a processor error leaves the
    booking cancelled with ``refund_status=failed`` and the error recorded.
    A pending Stripe refund keeps the booking ``refunding`` until a webhook
    reports the final outcome.
    """
    booking.refresh_from_db()
    if not _awaiting_refund(booking):
        logger.info("refunds: booking %s is not awaiting a refund", booking.id)
        return booking

    try:
        result = issue_refund(
            payment_reference=booking.payment_reference,
            amount=booking.total_price,
            idempotency_key=refund_idempotency_key(booking),
        )
    except (StripePaymentError, StripeTransientError, StripeConfigurationError) as exc:
        with transaction.atomic():
            locked = Booking.objects.select_for_update().get(pk=booking.pk)
            if _awaiting_refund(locked):
                _mark_failed(locked, str(exc) or exc.__class__.__name__)
        booking.refresh_from_db()
        return booking

    record_refund_outcome(booking, refund_id=result["id"], refund_status=result["status"])
    booking.refresh_from_db()
    return booking


def record_refund_outcome(
    booking: Booking,
    *,
    refund_id: str,
    refund_status: str,
    failure_reason: str = "",
) -> None:
    """Apply a Stripe refund status (from the API or a webhook) to the booking."""
    with transaction.atomic():
        locked = Booking.objects.select_for_update().get(pk=booking.pk)
        if locked.payment_status != Booking.PaymentStatus.REFUNDING:
            logger.info(
                "refunds: ignoring refund %s for booking %s in payment status %s",
                refund_id,
                locked.id,
                locked.payment_status,
            )
            return
        if refund_status == REFUND_SUCCEEDED:
            _mark_refunded(locked, refund_id)
            return
        if refund_status in REFUND_FAILED_STATES:
            if refund_id:
                locked.refund_id = refund_id
                locked.save(update_fields=["refund_id", "updated_at"])
            _mark_failed(locked, failure_reason or f"Stripe refund {refund_status}.")
            return
        if refund_id and locked.refund_id != refund_id:
            locked.refund_id = refund_id
            locked.save(update_fields=["refund_id", "updated_at"])
        logger.info("refunds: refund for booking %s is %s", locked.id, refund_status or "pending")


def retry_refund(booking: Booking) -> Booking:
    """Re-run a failed refund. Only failed refunds are retried."""
    with transaction.atomic():
        locked = Booking.objects.select_for_update().get(pk=booking.pk)
        if (
            locked.payment_status != Booking.PaymentStatus.REFUNDING
            or locked.refund_status != Booking.RefundStatus.FAILED
        ):
            raise ValidationError({"refund_status": ["Only failed refunds can be retried."]})
        locked.refund_status = Booking.RefundStatus.REQUESTED
        locked.refund_error = ""
        locked.save(update_fields=["refund_status", "refund_error", "updated_at"])
    logger.info("refunds: retrying refund for booking %s", booking.id)
    return apply_refund(locked)
