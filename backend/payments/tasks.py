"""Celery tasks for owner payouts."""

from __future__ import annotations

import logging

from celery import shared_task
from django.core.exceptions import ValidationError
from django.utils import timezone

from .ledger import due_payout_bookings, transfer_owner_payout
from .stripe_api import StripeConfigurationError, StripePaymentError, StripeTransientError

logger = logging.getLogger(__name__)


@shared_task(name="payments.transfer_owner_payouts")
def transfer_owner_payouts() -> int:
    """
    Transfer the owner share of every ended booking not yet paid out.

    Failures are logged per booking and retried on the next run. Returns the
    number of transfers recorded.
    """
    now = timezone.now()
    transferred = 0
    for booking in due_payout_bookings(now=now):
        try:
            _, created = transfer_owner_payout(booking, now=now)
        except ValidationError as exc:
            logger.warning("payments: payout skipped for booking %s: %s", booking.id, exc.messages)
            continue
        except StripeConfigurationError:
            logger.exception("payments: Stripe not configured; stopping payout run")
            raise
        except (StripeTransientError, StripePaymentError) as exc:
            logger.warning("payments: payout transfer failed for booking %s: %s", booking.id, exc)
            continue
        if created:
            transferred += 1
    if transferred:
        logger.info("payments: transferred %s owner payout(s)", transferred)
    return transferred
