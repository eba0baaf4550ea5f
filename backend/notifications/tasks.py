from __future__ import annotations

import logging
from typing import Optional

from celery import shared_task
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils import timezone

from notifications.models import NotificationLog

logger = logging.getLogger(__name__)
User = get_user_model()
DATETIME_DISPLAY_FORMAT = "%a %d %b %Y, %H:%M"


def _render(template: str, context: dict) -> str:
    """Render a template relative to the notifications app."""
    return render_to_string(template, context).strip()


def _build_email_context(extra: Optional[dict]) -> dict:
    frontend_origin = (getattr(settings, "FRONTEND_ORIGIN", "") or "").rstrip("/")
    context = {
        "site_name": getattr(settings, "SITE_NAME", "Parkeo"),
        "site_url": frontend_origin,
    }
    if extra:
        context.update(extra)
    return context


def _log_notification(
    type_: str,
    status: str,
    *,
    recipient: str = "",
    user_id: int | None = None,
    booking_id: int | None = None,
    error: str | None = None,
) -> None:
    try:
        NotificationLog.objects.create(
            channel=NotificationLog.Channel.EMAIL,
            type=type_,
            status=status,
            recipient=recipient or "",
            user_id=user_id,
            booking_id=booking_id,
            error=error or "",
        )
    except Exception:
        logger.exception(
            "notifications: failed to persist notification log",
            extra={"type": type_, "status": status},
        )


def _send_email_logged(
    type_: str,
    *,
    to_email: str | None,
    subject: str,
    template: str,
    context: dict | None = None,
    user_id: int | None = None,
    booking_id: int | None = None,
) -> bool:
    if not to_email:
        _log_notification(
            type_,
            NotificationLog.Status.FAILED,
            user_id=user_id,
            booking_id=booking_id,
            error="missing recipient email",
        )
        logger.warning("notifications: cannot send email without recipient")
        return False

    full_context = _build_email_context(context)
    full_context["subject"] = subject
    body = _render(f"email/{template}", full_context)
    message = EmailMultiAlternatives(
        subject=subject,
        body=body,
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[to_email],
    )

    try:
        message.send(fail_silently=False)
    except Exception as exc:
        error_text = str(exc) or exc.__class__.__name__
        logger.exception(
            "notifications: email send failed",
            extra={"type": type_, "booking_id": booking_id, "user_id": user_id},
        )
        _log_notification(
            type_,
            NotificationLog.Status.FAILED,
            recipient=to_email,
            user_id=user_id,
            booking_id=booking_id,
            error=error_text,
        )
        return False

    _log_notification(
        type_,
        NotificationLog.Status.SENT,
        recipient=to_email,
        user_id=user_id,
        booking_id=booking_id,
    )
    return True


def _get_booking(booking_id: int):
    from bookings.models import Booking

    booking = (
        Booking.objects.select_related("parking", "parking__owner", "renter")
        .filter(pk=booking_id)
        .first()
    )
    if booking is None:
        logger.warning("notifications: booking %s no longer exists", booking_id)
    return booking


def _display(value) -> str:
    return timezone.localtime(value).strftime(DATETIME_DISPLAY_FORMAT)


def _booking_context(booking) -> dict:
    from payments_cancellation_policy import refund_deadline

    parking = booking.parking
    frontend_origin = (getattr(settings, "FRONTEND_ORIGIN", "") or "").rstrip("/")
    address_parts = [parking.street_address, f"{parking.postal_code} {parking.city}".strip()]
    return {
        "booking_id": booking.id,
        "parking_title": parking.title,
        "parking_address": ", ".join(part for part in address_parts if part),
        "start_display": _display(booking.start_time),
        "end_display": _display(booking.end_time),
        "refund_deadline_display": _display(refund_deadline(booking)),
        "total_price": f"{booking.total_price}",
        "currency": booking.currency,
        "renter_name": booking.renter.display_name(),
        "booking_url": f"{frontend_origin}/bookings/{booking.id}" if frontend_origin else "",
    }


@shared_task(name="notifications.send_booking_confirmed_email")
def send_booking_confirmed_email(booking_id: int) -> int:
    """Email the renter and the parking owner that a booking is paid and confirmed."""
    booking = _get_booking(booking_id)
    if booking is None:
        return 0
    context = _booking_context(booking)
    site_name = getattr(settings, "SITE_NAME", "Parkeo")
    sent = 0

    renter = booking.renter
    if _send_email_logged(
        "booking_confirmed_renter",
        to_email=renter.email,
        subject=f"{site_name}: your booking is confirmed",
        template="booking_confirmed_renter.txt",
        context={**context, "greeting_name": renter.display_name()},
        user_id=renter.id,
        booking_id=booking.id,
    ):
        sent += 1

    owner = booking.parking.owner
    if _send_email_logged(
        "booking_confirmed_owner",
        to_email=owner.email,
        subject=f"{site_name}: new booking for {booking.parking.title}",
        template="booking_confirmed_owner.txt",
        context={**context, "greeting_name": owner.display_name()},
        user_id=owner.id,
        booking_id=booking.id,
    ):
        sent += 1
    return sent


@shared_task(name="notifications.send_booking_cancelled_email")
def send_booking_cancelled_email(booking_id: int) -> int:
    """Email both parties that a booking was cancelled, and whether it is refunded."""
    booking = _get_booking(booking_id)
    if booking is None:
        return 0
    context = _booking_context(booking)
    context.update(
        {
            "cancelled_by": booking.cancelled_by or "renter",
            "refund_requested": booking.refund_status != booking.RefundStatus.NONE,
            "was_paid": booking.payment_status != booking.PaymentStatus.UNPAID,
        }
    )
    site_name = getattr(settings, "SITE_NAME", "Parkeo")
    sent = 0
    for recipient in (booking.renter, booking.parking.owner):
        if _send_email_logged(
            "booking_cancelled",
            to_email=recipient.email,
            subject=f"{site_name}: booking cancelled",
            template="booking_cancelled.txt",
            context={**context, "greeting_name": recipient.display_name()},
            user_id=recipient.id,
            booking_id=booking.id,
        ):
            sent += 1
    return sent
