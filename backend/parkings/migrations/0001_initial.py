import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Parking",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("title", models.CharField(max_length=140)),
                ("description", models.TextField(blank=True)),
                ("street_address", models.CharField(blank=True, default="", max_length=255)),
                ("postal_code", models.CharField(blank=True, default="", max_length=16)),
                ("city", models.CharField(blank=True, default="", max_length=80)),
                (
                    "parking_type",
                    models.CharField(
                        choices=[("outdoor", "Outdoor"), ("indoor", "Indoor"), ("garage", "Garage")],
                        default="outdoor",
                        max_length=16,
                    ),
                ),
                ("is_covered", models.BooleanField(default=False)),
                ("has_ev_charger", models.BooleanField(default=False)),
                ("is_secure", models.BooleanField(default=False)),
                ("is_lit", models.BooleanField(default=False)),
                (
                    "price_hour",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=8,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "price_day",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Optional daily rate used for bookings of a working day or longer.",
                        max_digits=8,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "photos",
                    models.JSONField(blank=True, default=list, help_text="Public photo URLs."),
                ),
                (
                    "latitude",
                    models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True),
                ),
                (
                    "longitude",
                    models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="parkings",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["owner", "is_active"], name="parking_owner_active_idx"),
                    models.Index(fields=["city", "is_active"], name="parking_city_active_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AvailabilitySlot",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                (
                    "weekday",
                    models.PositiveSmallIntegerField(
                        help_text="ISO weekday, 1 = Monday.",
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(7),
                        ],
                    ),
                ),
                ("start_time", models.CharField(max_length=8)),
                ("end_time", models.CharField(max_length=8)),
                ("enabled", models.BooleanField(default=True)),
                (
                    "parking",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="availability_slots",
                        to="parkings.parking",
                    ),
                ),
            ],
            options={
                "ordering": ["weekday", "start_time", "id"],
                "indexes": [
                    models.Index(fields=["parking", "weekday"], name="avail_slot_parking_day_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Blackout",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField()),
                ("reason", models.CharField(blank=True, default="", max_length=140)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "parking",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="blackouts",
                        to="parkings.parking",
                    ),
                ),
            ],
            options={
                "ordering": ["start_time"],
                "indexes": [
                    models.Index(
                        fields=["parking", "start_time", "end_time"],
                        name="blackout_parking_window_idx",
                    ),
                ],
            },
        ),
    ]
