"""Owner earnings and payout API endpoints."""

from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from bookings.models import Booking

from .ledger import (
    compute_monthly_earnings,
    compute_owner_wallet,
    record_owner_payout,
    transfer_owner_payout,
)
from .models import OwnerPayoutAccount
from .stripe_api import (
    StripeConfigurationError,
    StripePaymentError,
    StripeTransientError,
    create_connect_onboarding_link,
    ensure_connect_account,
    refresh_connect_status,
)

logger = logging.getLogger(__name__)

STRIPE_ERRORS = (StripeConfigurationError, StripePaymentError, StripeTransientError)


def _stripe_error_response(exc: Exception, user_id: int, operation: str) -> Response:
    if isinstance(exc, StripePaymentError):
        return Response(
            {"detail": str(exc) or "Stripe rejected the request."},
            status=status.HTTP_400_BAD_REQUEST,
        )
    if isinstance(exc, StripeConfigurationError):
        logger.exception("payments: Stripe configuration error during %s for user %s", operation, user_id)
    else:
        logger.warning("payments: %s failed for user %s: %s", operation, user_id, exc)
    return Response(
        {"detail": "Payout service temporarily unavailable; please retry."},
        status=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


def _connect_payload(payout_account: OwnerPayoutAccount | None) -> dict:
    if payout_account is None:
        return {
            "stripe_account_id": None,
            "details_submitted": False,
            "charges_enabled": False,
            "payouts_enabled": False,
            "requirements_due": [],
        }
    return {
        "stripe_account_id": payout_account.stripe_account_id,
        "details_submitted": payout_account.details_submitted,
        "charges_enabled": payout_account.charges_enabled,
        "payouts_enabled": payout_account.payouts_enabled,
        "requirements_due": list(payout_account.requirements_due or []),
    }


def _payout_response(booking: Booking, payout, created: bool) -> Response:
    return Response(
        {
            "booking_id": booking.id,
            "transaction_id": payout.id,
            "amount": f"{payout.amount}",
            "currency": payout.currency,
            "stripe_id": payout.stripe_id,
            "created": created,
        },
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def owner_wallet(request):
    """Return the caller's net earnings split into pending, available and paid-out."""
    return Response(compute_owner_wallet(request.user), status=status.HTTP_200_OK)


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def owner_monthly_earnings(request):
    """Return the caller's net earnings per month of booking start."""
    return Response(
        {"results": compute_monthly_earnings(request.user)},
        status=status.HTTP_200_OK,
    )


@api_view(["POST"])
@permission_classes([IsAdminUser])
def record_booking_payout(request, booking_id: int):
    """Staff-only: record that the owner's share of a booking was paid out."""
    booking = get_object_or_404(Booking.objects.select_related("parking"), pk=booking_id)
    stripe_id = (request.data.get("stripe_id") or "").strip() or None
    try:
        payout, created = record_owner_payout(booking, stripe_id=stripe_id)
    except ValidationError as exc:
        return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
    return _payout_response(booking, payout, created)


@api_view(["POST"])
@permission_classes([IsAdminUser])
def transfer_booking_payout(request, booking_id: int):
    """Staff-only: transfer the owner's share of an ended booking through Stripe Connect."""
    booking = get_object_or_404(Booking.objects.select_related("parking"), pk=booking_id)
    try:
        payout, created = transfer_owner_payout(booking)
    except ValidationError as exc:
        return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
    except STRIPE_ERRORS as exc:
        return _stripe_error_response(exc, request.user.id, "owner transfer")
    return _payout_response(booking, payout, created)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def connect_account(request):
    """Create the caller's Stripe Connect account, or return the existing one."""
    try:
        payout_account, created = ensure_connect_account(request.user)
    except STRIPE_ERRORS as exc:
        return _stripe_error_response(exc, request.user.id, "connect account")
    return Response(
        {"stripe_account_id": payout_account.stripe_account_id, "created": created},
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def connect_onboarding(request):
    """Return a Stripe-hosted onboarding link, creating the account if needed."""
    try:
        url = create_connect_onboarding_link(request.user)
    except STRIPE_ERRORS as exc:
        return _stripe_error_response(exc, request.user.id, "onboarding link")
    return Response({"url": url}, status=status.HTTP_200_OK)


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def connect_status(request):
    """Return the caller's onboarding flags, refreshed from Stripe when an account exists."""
    try:
        payout_account = refresh_connect_status(request.user)
    except STRIPE_ERRORS as exc:
        return _stripe_error_response(exc, request.user.id, "connect status")
    return Response(_connect_payload(payout_account), status=status.HTTP_200_OK)
