"""Celery tasks for bookings."""

from __future__ import annotations

import logging

from celery import shared_task
from django.utils import timezone

from .domain import expire_stale_pending

logger = logging.getLogger(__name__)


@shared_task(name="bookings.expire_pending_payments")
def expire_pending_payments() -> int:
    """
    Release the windows held by pending bookings whose payment time ran out.

    Returns the number of bookings moved to ``expired``.
    """
    expired_count = expire_stale_pending(timezone.now())
    if expired_count:
        logger.info("bookings: expired %s unpaid booking(s)", expired_count)
    return expired_count
