"""Stripe helpers for booking checkout, refunds, Connect payouts and webhooks."""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from bookings.models import Booking

from .models import OwnerPayoutAccount

logger = logging.getLogger(__name__)

CHECKOUT_PAID_STATES = {"paid", "no_payment_required"}
_http_client_state: dict[str, int] = {}


class StripeConfigurationError(Exception):
    """Stripe is not configured correctly in the environment."""


class StripeTransientError(Exception):
    """Temporary Stripe/API issue that should be retried."""


class StripePaymentError(Exception):
    """Permanent payment failure for a booking charge or refund."""


def _get_stripe_api_key() -> str:
    """Return the configured Stripe API key or raise if missing."""
    api_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not api_key:
        raise StripeConfigurationError("Stripe secret key not configured.")
    return api_key


def _configure_stripe() -> None:
    """Set the API key and the bounded network behaviour used for every call."""
    stripe.api_key = _get_stripe_api_key()
    stripe.max_network_retries = 0
    timeout = int(getattr(settings, "STRIPE_TIMEOUT_SECONDS", 15) or 15)
    if _http_client_state.get("timeout") != timeout:
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        _http_client_state["timeout"] = timeout


def _to_cents(amount: Decimal) -> int:
    """Convert a Decimal amount to integer cents, rounding to the nearest cent."""
    cents = (Decimal(amount) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def _handle_stripe_error(exc: stripe.StripeError) -> None:
    """Map Stripe SDK errors onto internal exception types."""
    if isinstance(exc, stripe.CardError):
        message = exc.user_message or "Your card was declined."
        raise StripePaymentError(message) from exc
    if isinstance(
        exc,
        (
            stripe.RateLimitError,
            stripe.APIConnectionError,
            stripe.APIError,
        ),
    ):
        raise StripeTransientError("Temporary Stripe error, please retry.") from exc
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        raise StripeConfigurationError("Stripe credentials are invalid or unauthorized.") from exc
    if isinstance(exc, stripe.InvalidRequestError):
        raise StripePaymentError(exc.user_message or "Invalid payment request.") from exc
    raise StripePaymentError(exc.user_message or "Stripe payment failure.") from exc


def _value(obj: Any, field: str, default: Any = None) -> Any:
    """Safely fetch a field from a Stripe object or dict payload."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(field, default)
    return getattr(obj, field, default)


def _get_frontend_origin() -> str:
    """Return the configured frontend origin or a local fallback."""
    configured = (getattr(settings, "FRONTEND_ORIGIN", "") or "").strip()
    base = configured or "http://localhost:3000"
    return base.rstrip("/") or base


def _booking_checkout_urls(booking_id: int) -> tuple[str, str]:
    """Return the success and cancel URLs for booking checkout sessions."""
    base_path = f"{_get_frontend_origin()}/bookings/{booking_id}"
    success_url = f"{base_path}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{base_path}?checkout=cancel"
    return success_url, cancel_url


def create_checkout_session(booking: Booking) -> tuple[str, str]:
    """Create a Stripe Checkout session collecting the booking total."""
    _configure_stripe()
    amount_cents = _to_cents(booking.total_price)
    if amount_cents <= 0:
        raise StripePaymentError("Booking total must be greater than zero.")

    success_url, cancel_url = _booking_checkout_urls(booking.id)
    expires_minutes = int(getattr(settings, "STRIPE_CHECKOUT_EXPIRES_MINUTES", 30) or 30)
    expires_at = timezone.now() + timedelta(minutes=expires_minutes)
    parking_title = (booking.parking.title or "").strip() or "Parking"
    start_local = timezone.localtime(booking.start_time)
    end_local = timezone.localtime(booking.end_time)
    description = (
        f"{start_local.strftime('%Y-%m-%d %H:%M')} to {end_local.strftime('%Y-%m-%d %H:%M')}"
    )
    metadata = {
        "env": getattr(settings, "STRIPE_ENV", "dev") or "dev",
        "kind": "booking",
        "booking_id": str(booking.id),
        "parking_id": str(booking.parking_id),
        "renter_id": str(booking.renter_id),
    }

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=f"booking:{booking.id}",
            customer_email=booking.renter.email or None,
            expires_at=int(expires_at.timestamp()),
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            line_items=[
                {
                    "price_data": {
                        "currency": (booking.currency or "CHF").lower(),
                        "unit_amount": amount_cents,
                        "product_data": {
                            "name": parking_title,
                            "description": description,
                        },
                    },
                    "quantity": 1,
                }
            ],
        )
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    session_id = _value(session, "id")
    session_url = _value(session, "url")
    if not session_id or not session_url:
        raise StripeConfigurationError("Stripe did not return a checkout session URL.")
    return session_id, session_url


def retrieve_checkout_session(session_id: str) -> Any:
    """Fetch a Checkout session from Stripe."""
    _configure_stripe()
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)


def checkout_session_is_paid(session: Any) -> bool:
    return _value(session, "payment_status") in CHECKOUT_PAID_STATES


def checkout_session_payment_reference(session: Any) -> str:
    """Return the PaymentIntent id carried by a Checkout session."""
    intent = _value(session, "payment_intent")
    if isinstance(intent, str):
        return intent
    return _value(intent, "id", "") or ""


def issue_refund(*, payment_reference: str, amount: Decimal, idempotency_key: str) -> dict[str, str]:
    """
    Refund ``amount`` against a captured PaymentIntent.

    Returns ``{"id": ..., "status": ...}`` where status is Stripe's refund status.
    Idempotent through the Stripe idempotency key.
    """
    amount_cents = _to_cents(amount)
    if amount_cents <= 0:
        raise StripePaymentError("Refund amount must be greater than zero.")
    if not (payment_reference or "").strip():
        raise StripePaymentError("Booking is missing the charge PaymentIntent id.")

    _configure_stripe()
    try:
        refund = stripe.Refund.create(
            payment_intent=payment_reference,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", "") == "charge_already_refunded":
            logger.info("Refund already processed for PaymentIntent %s", payment_reference)
            return {"id": "", "status": "succeeded"}
        _handle_stripe_error(exc)
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    return {"id": _value(refund, "id", "") or "", "status": _value(refund, "status", "") or ""}


def _connect_requirements(account_data: Any) -> list[str]:
    requirements = _value(account_data, "requirements") or {}
    return sorted(str(item) for item in (_value(requirements, "currently_due") or []))


def sync_payout_account(payout_account: OwnerPayoutAccount, account_data: Any) -> OwnerPayoutAccount:
    """Copy the onboarding flags of a Stripe account payload onto the local row."""
    payout_account.stripe_account_id = (
        _value(account_data, "id") or payout_account.stripe_account_id
    )
    payout_account.details_submitted = bool(_value(account_data, "details_submitted", False))
    payout_account.charges_enabled = bool(_value(account_data, "charges_enabled", False))
    payout_account.payouts_enabled = bool(_value(account_data, "payouts_enabled", False))
    payout_account.requirements_due = _connect_requirements(account_data)
    payout_account.last_synced_at = timezone.now()
    payout_account.save()
    return payout_account


def _retrieve_connect_account(account_id: str) -> Any | None:
    """Fetch a Connect account; None when Stripe no longer knows it."""
    try:
        return stripe.Account.retrieve(account_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", "") == "resource_missing":
            return None
        _handle_stripe_error(exc)
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)


def ensure_connect_account(user) -> tuple[OwnerPayoutAccount, bool]:
    """
    Return the owner's Connect Express account, creating it on first use.

    Returns (payout_account, created). An account deleted on the Stripe side
    is recreated and the local row repointed.
    """
    _configure_stripe()
    payout_account = OwnerPayoutAccount.objects.filter(user=user).first()
    if payout_account is not None:
        account_data = _retrieve_connect_account(payout_account.stripe_account_id)
        if account_data is not None:
            return sync_payout_account(payout_account, account_data), False
        logger.info(
            "Stripe Connect account %s missing for user %s; recreating.",
            payout_account.stripe_account_id,
            user.id,
        )

    account_params = {
        "type": "express",
        "country": getattr(settings, "STRIPE_CONNECT_COUNTRY", "CH") or "CH",
        "capabilities": {
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        "business_type": "individual",
        "metadata": {
            "env": getattr(settings, "STRIPE_ENV", "dev") or "dev",
            "user_id": str(user.id),
        },
    }
    if user.email:
        account_params["email"] = user.email
    try:
        account_data = stripe.Account.create(**account_params)
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    if not _value(account_data, "id"):
        raise StripeConfigurationError("Stripe did not return a Connect account id.")
    if payout_account is None:
        payout_account = OwnerPayoutAccount(user=user)
    logger.info("Created Stripe Connect account %s for user %s", _value(account_data, "id"), user.id)
    return sync_payout_account(payout_account, account_data), True


def refresh_connect_status(user) -> OwnerPayoutAccount | None:
    """Re-read the owner's Connect account from Stripe; None when there is none."""
    payout_account = OwnerPayoutAccount.objects.filter(user=user).first()
    if payout_account is None:
        return None
    _configure_stripe()
    account_data = _retrieve_connect_account(payout_account.stripe_account_id)
    if account_data is None:
        raise StripePaymentError("Stripe Connect account no longer exists; onboard again.")
    return sync_payout_account(payout_account, account_data)


def create_connect_onboarding_link(user) -> str:
    """Create a Stripe-hosted onboarding link for the owner's Connect account."""
    payout_account, _ = ensure_connect_account(user)
    base_path = f"{_get_frontend_origin()}/owner/payouts"
    try:
        link = stripe.AccountLink.create(
            account=payout_account.stripe_account_id,
            type="account_onboarding",
            refresh_url=f"{base_path}?onboarding=refresh",
            return_url=f"{base_path}?onboarding=return",
        )
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    link_url = _value(link, "url")
    if not link_url:
        raise StripeConfigurationError("Stripe did not return an onboarding link.")
    return link_url


def create_owner_transfer(*, booking: Booking, amount: Decimal, destination: str) -> str:
    """
    Transfer the owner's share of a booking to their Connect account.

    Idempotent per booking through the Stripe idempotency key. Returns the
    transfer id.
    """
    amount_cents = _to_cents(amount)
    if amount_cents <= 0:
        raise StripePaymentError("Payout amount must be greater than zero.")
    if not destination:
        raise StripeConfigurationError("Owner is missing a Stripe Connect account id.")

    _configure_stripe()
    try:
        transfer = stripe.Transfer.create(
            amount=amount_cents,
            currency=(booking.currency or "CHF").lower(),
            destination=destination,
            description=f"Owner payout for booking #{booking.id}",
            metadata={
                "env": getattr(settings, "STRIPE_ENV", "dev") or "dev",
                "kind": "owner_payout",
                "booking_id": str(booking.id),
                "parking_id": str(booking.parking_id),
            },
            transfer_group=f"booking:{booking.id}",
            idempotency_key=f"booking:{booking.id}:owner_payout",
        )
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    transfer_id = _value(transfer, "id")
    if not transfer_id:
        raise StripeConfigurationError("Stripe did not return a transfer id.")
    return transfer_id


def _booking_from_metadata(data_object: Any) -> Booking | None:
    metadata = _value(data_object, "metadata") or {}
    booking_id = _value(metadata, "booking_id")
    if not booking_id:
        return None
    try:
        return Booking.objects.get(pk=int(booking_id))
    except (Booking.DoesNotExist, ValueError, TypeError):
        logger.info("stripe_webhook: no booking for id %s", booking_id)
        return None


def _booking_from_payment_intent(intent_id: str) -> Booking | None:
    if not intent_id:
        return None
    return Booking.objects.filter(payment_reference=intent_id).first()


def _handle_checkout_paid(data_object: Any) -> None:
    from bookings.domain import confirm_payment

    if not checkout_session_is_paid(data_object):
        logger.info("stripe_webhook: session %s not paid yet", _value(data_object, "id"))
        return
    booking = _booking_from_metadata(data_object)
    if booking is None:
        return
    try:
        confirm_payment(
            booking.id,
            checkout_session_payment_reference(data_object),
            session_id=_value(data_object, "id", "") or "",
        )
    except ValidationError as exc:
        logger.warning("stripe_webhook: could not confirm booking %s: %s", booking.id, exc.messages)


def _handle_checkout_expired(data_object: Any) -> None:
    from bookings.domain import expire_pending

    booking = _booking_from_metadata(data_object)
    if booking is None:
        return
    session_id = _value(data_object, "id", "") or ""
    if booking.stripe_session_id and session_id and booking.stripe_session_id != session_id:
        # A newer session replaced this one; the hold stays governed by its own TTL.
        return
    expire_pending(booking.id, force=True)


def _handle_refund_event(event_type: str, data_object: Any) -> None:
    from payments_refunds import record_refund_outcome

    booking = _booking_from_payment_intent(_value(data_object, "payment_intent", "") or "")
    if booking is None:
        return
    if event_type == "charge.refunded":
        if not _value(data_object, "refunded", False):
            return
        refunds = _value(_value(data_object, "refunds"), "data") or []
        refund_id = _value(refunds[0], "id", "") if refunds else ""
        record_refund_outcome(booking, refund_id=refund_id or "", refund_status="succeeded")
        return
    record_refund_outcome(
        booking,
        refund_id=_value(data_object, "id", "") or "",
        refund_status=_value(data_object, "status", "") or "",
        failure_reason=_value(data_object, "failure_reason", "") or "",
    )


def _handle_connect_account_updated(data_object: Any) -> None:
    account_id = _value(data_object, "id", "") or ""
    payout_account = OwnerPayoutAccount.objects.filter(stripe_account_id=account_id).first()
    if payout_account is None:
        logger.info("stripe_webhook: no payout account for %s", account_id)
        return
    sync_payout_account(payout_account, data_object)


@api_view(["POST"])
@authentication_classes([])
@permission_classes([])
def stripe_webhook(request):
    """Handle Stripe webhook callbacks for checkout sessions, refunds and Connect accounts."""
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    endpoint_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=endpoint_secret,
        )
    except ValueError:
        return Response(status=status.HTTP_400_BAD_REQUEST)
    except stripe.SignatureVerificationError:
        return Response(status=status.HTTP_400_BAD_REQUEST)

    event_type = _value(event, "type")
    data_object = _value(_value(event, "data"), "object") or {}
    logger.info("stripe_webhook: received %s", event_type)

    if event_type in {"checkout.session.completed", "checkout.session.async_payment_succeeded"}:
        _handle_checkout_paid(data_object)
    elif event_type in {"checkout.session.expired", "checkout.session.async_payment_failed"}:
        _handle_checkout_expired(data_object)
    elif event_type in {"charge.refunded", "refund.updated"}:
        _handle_refund_event(event_type, data_object)
    elif event_type == "account.updated":
        _handle_connect_account_updated(data_object)

    return Response(status=status.HTTP_200_OK)
