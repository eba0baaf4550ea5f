"""Serializers for booking-related API endpoints."""

from __future__ import annotations

from django.utils import timezone
from rest_framework import serializers

from .domain import payment_seconds_remaining
from .models import Booking


class BookingSerializer(serializers.ModelSerializer):
    """Serialize Booking instances for API usage."""

    parking_title = serializers.ReadOnlyField(source="parking.title")
    parking_city = serializers.ReadOnlyField(source="parking.city")
    owner = serializers.ReadOnlyField(source="parking.owner_id")
    renter_username = serializers.ReadOnlyField(source="renter.username")
    lifecycle_state = serializers.SerializerMethodField()
    payment_seconds_remaining = serializers.SerializerMethodField()

    class Meta:
        model = Booking
        fields = (
            "id",
            "parking",
            "parking_title",
            "parking_city",
            "owner",
            "renter",
            "renter_username",
            "start_time",
            "end_time",
            "total_price",
            "currency",
            "status",
            "lifecycle_state",
            "payment_status",
            "payment_expires_at",
            "payment_seconds_remaining",
            "paid_at",
            "cancelled_at",
            "cancelled_by",
            "refund_status",
            "refund_reason_code",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields

    def get_lifecycle_state(self, obj: Booking) -> str:
        return obj.lifecycle_state(timezone.now())

    def get_payment_seconds_remaining(self, obj: Booking) -> int:
        return payment_seconds_remaining(obj)


class BookingCreateSerializer(serializers.Serializer):
    """Validate the payload used to request a new booking."""

    parking = serializers.IntegerField(min_value=1)
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    expected_price = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        required=False,
        allow_null=True,
        help_text="Price shown to the renter; the server total always wins.",
    )
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True)

    def validate(self, attrs):
        if attrs["end_time"] <= attrs["start_time"]:
            raise serializers.ValidationError({"end_time": ["End time must be after start time."]})
        return attrs


class AvailabilityQuerySerializer(serializers.Serializer):
    parking = serializers.IntegerField(min_value=1)
    start = serializers.DateTimeField()
    end = serializers.DateTimeField()

    def validate(self, attrs):
        if attrs["end"] <= attrs["start"]:
            raise serializers.ValidationError({"end": ["End must be after start."]})
        return attrs


class CancelSerializer(serializers.Serializer):
    role = serializers.ChoiceField(
        choices=Booking.CancelledBy.choices,
        required=False,
        allow_null=True,
    )


class ConfirmPaymentSerializer(serializers.Serializer):
    session_id = serializers.CharField(required=False, allow_blank=True, max_length=255)
