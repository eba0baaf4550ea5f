from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models


class Parking(models.Model):
    class ParkingType(models.TextChoices):
        OUTDOOR = "outdoor", "Outdoor"
        INDOOR = "indoor", "Indoor"
        GARAGE = "garage", "Garage"

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="parkings",
    )
    title = models.CharField(max_length=140)
    description = models.TextField(blank=True)
    street_address = models.CharField(max_length=255, blank=True, default="")
    postal_code = models.CharField(max_length=16, blank=True, default="")
    city = models.CharField(max_length=80, blank=True, default="")
    parking_type = models.CharField(
        max_length=16,
        choices=ParkingType.choices,
        default=ParkingType.OUTDOOR,
    )
    is_covered = models.BooleanField(default=False)
    has_ev_charger = models.BooleanField(default=False)
    is_secure = models.BooleanField(default=False)
    is_lit = models.BooleanField(default=False)
    price_hour = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        validators=[MinValueValidator(0)],
    )
    price_day = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
        help_text="Optional daily rate used for bookings of a working day or longer.",
    )
    photos = models.JSONField(default=list, blank=True, help_text="Public photo URLs.")
    latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["owner", "is_active"], name="parking_owner_active_idx"),
            models.Index(fields=["city", "is_active"], name="parking_city_active_idx"),
        ]

    def clean(self):
        if not self.title or len(self.title.strip()) < 3:
            raise ValidationError({"title": ["Title too short."]})
        if self.price_hour is not None and self.price_hour <= 0:
            raise ValidationError({"price_hour": ["Hourly price must be greater than 0."]})

    def __str__(self) -> str:
        return f"{self.title} (#{self.pk})"


class AvailabilitySlot(models.Model):
    """
    One recurring weekly open window for a parking.

    Times are stored as the submitted "HH:MM[:SS]" strings and normalized on
    read, so rows written before validation existed still render.
    """

    parking = models.ForeignKey(
        Parking,
        on_delete=models.CASCADE,
        related_name="availability_slots",
    )
    weekday = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(7)],
        help_text="ISO weekday, 1 = Monday.",
    )
    start_time = models.CharField(max_length=8)
    end_time = models.CharField(max_length=8)
    enabled = models.BooleanField(default=True)

    class Meta:
        ordering = ["weekday", "start_time", "id"]
        indexes = [models.Index(fields=["parking", "weekday"], name="avail_slot_parking_day_idx")]

    def __str__(self) -> str:
        return f"Parking {self.parking_id} day {self.weekday} {self.start_time}-{self.end_time}"


class Blackout(models.Model):
    """Owner-declared period during which the parking is closed."""

    parking = models.ForeignKey(
        Parking,
        on_delete=models.CASCADE,
        related_name="blackouts",
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    reason = models.CharField(max_length=140, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["start_time"]
        indexes = [
            models.Index(fields=["parking", "start_time", "end_time"], name="blackout_parking_window_idx")
        ]

    def __str__(self) -> str:
        return f"Blackout {self.pk} for parking {self.parking_id}"
