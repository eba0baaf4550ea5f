from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.http import JsonResponse


def _rate_to_bps(rate: Decimal) -> int:
    """Convert a decimal rate (e.g. 0.15) to basis points."""
    return int((Decimal(rate) * Decimal("10000")).to_integral_value(rounding=ROUND_HALF_UP))


def pricing_summary(_request):
    """
    Public endpoint that surfaces the platform's booking policy constants.

    Clients render cancellation previews and payment countdowns from these
    values instead of hard-coding their own copies.
    """
    fee_bps = max(_rate_to_bps(settings.PLATFORM_FEE_RATE), 0)

    return JsonResponse(
        {
            "currency": settings.BOOKING_CURRENCY,
            "platform_fee_bps": fee_bps,
            "platform_fee_rate": round(fee_bps / 100, 2),
            "renter_refund_cutoff_hours": settings.RENTER_REFUND_CUTOFF_HOURS,
            "pending_payment_ttl_minutes": settings.BOOKING_PENDING_PAYMENT_TTL_MINUTES,
            "daily_rate_min_hours": settings.BOOKING_DAILY_RATE_MIN_HOURS,
            "enforce_availability": settings.BOOKING_ENFORCE_AVAILABILITY,
        }
    )
