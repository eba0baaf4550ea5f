import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.db.models import Q, QuerySet

from .models import Parking


def search_parkings(
    qs: QuerySet[Parking],
    q: str | None,
    city: str | None = None,
    parking_type: str | None = None,
    price_max: Decimal | None = None,
    amenities: list[str] | None = None,
    owner_id: int | None = None,
) -> QuerySet[Parking]:
    if q:
        qs = qs.filter(
            Q(title__icontains=q)
            | Q(description__icontains=q)
            | Q(city__icontains=q)
            | Q(street_address__icontains=q)
        )
    if city:
        qs = qs.filter(city__iexact=city)
    if parking_type:
        qs = qs.filter(parking_type=parking_type)
    if price_max is not None:
        qs = qs.filter(price_hour__lte=price_max)
    for amenity in amenities or ():
        qs = qs.filter(**{amenity: True})
    if owner_id is not None:
        qs = qs.filter(owner_id=owner_id)
    return qs.filter(is_active=True).order_by("-created_at")


def compute_booking_price(
    *,
    parking: Parking,
    start_time: datetime,
    end_time: datetime,
) -> Decimal:
    """
    Compute the authoritative price of a booking window.

    - With a daily rate and a duration of at least BOOKING_DAILY_RATE_MIN_HOURS:
      every started 24h block costs price_day (minimum one).
    - Otherwise every started hour costs price_hour (minimum one).
    """
    if end_time <= start_time:
        raise ValueError("end_time must be after start_time")

    hours = (end_time - start_time).total_seconds() / 3600

    def q2(value: Decimal) -> Decimal:
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    min_hours = getattr(settings, "BOOKING_DAILY_RATE_MIN_HOURS", 8)
    if parking.price_day is not None and parking.price_day > 0 and hours >= min_hours:
        days = max(1, math.ceil(hours / 24))
        return q2(Decimal(parking.price_day) * days)

    billed_hours = max(1, math.ceil(hours))
    return q2(Decimal(parking.price_hour) * billed_hours)
