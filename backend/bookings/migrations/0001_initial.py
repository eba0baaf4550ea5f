import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("parkings", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Booking",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField(help_text="Exclusive end of the booked window.")),
                ("total_price", models.DecimalField(decimal_places=2, max_digits=10)),
                ("currency", models.CharField(default="CHF", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_payment", "pending payment"),
                            ("confirmed", "confirmed"),
                            ("cancelled", "cancelled"),
                            ("expired", "expired"),
                        ],
                        default="pending_payment",
                        max_length=20,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("unpaid", "unpaid"),
                            ("paid", "paid"),
                            ("refunding", "refunding"),
                            ("refunded", "refunded"),
                        ],
                        default="unpaid",
                        max_length=16,
                    ),
                ),
                (
                    "payment_expires_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Pending-payment hold is released after this instant.",
                        null=True,
                    ),
                ),
                ("stripe_session_id", models.CharField(blank=True, default="", max_length=255)),
                (
                    "payment_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Stripe PaymentIntent id used to refund the charge.",
                        max_length=255,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancelled_by",
                    models.CharField(
                        blank=True,
                        choices=[("renter", "renter"), ("owner", "owner")],
                        default="",
                        max_length=8,
                    ),
                ),
                (
                    "refund_status",
                    models.CharField(
                        choices=[
                            ("none", "none"),
                            ("requested", "requested"),
                            ("refunded", "refunded"),
                            ("failed", "failed"),
                        ],
                        default="none",
                        max_length=16,
                    ),
                ),
                ("refund_reason_code", models.CharField(blank=True, default="", max_length=32)),
                ("refund_id", models.CharField(blank=True, default="", max_length=255)),
                ("refund_error", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "parking",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bookings",
                        to="parkings.parking",
                    ),
                ),
                (
                    "renter",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bookings_as_renter",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["parking", "start_time", "end_time"],
                        name="booking_parking_window_idx",
                    ),
                    models.Index(fields=["renter", "status"], name="booking_renter_status_idx"),
                    models.Index(
                        fields=["status", "payment_expires_at"], name="booking_status_expiry_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_time__gt", models.F("start_time"))),
                        name="booking_end_after_start",
                    ),
                ],
            },
        ),
    ]
