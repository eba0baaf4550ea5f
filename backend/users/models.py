from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Marketplace account; the same user may list parkings and book them."""

    phone = models.CharField(
        max_length=32,
        unique=True,
        null=True,
        blank=True,
        help_text="Optional E.164 formatted phone number.",
    )
    can_rent = models.BooleanField(default=True)
    can_list = models.BooleanField(default=True)

    def is_owner(self) -> bool:
        return bool(self.can_list)

    def is_renter(self) -> bool:
        return bool(self.can_rent)

    def display_name(self) -> str:
        full_name = (self.get_full_name() or "").strip()
        return full_name or self.username or f"user-{self.pk}"
