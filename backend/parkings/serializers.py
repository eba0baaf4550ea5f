from rest_framework import serializers

from .availability import validate_blackout_window
from .models import Blackout, Parking


class ParkingSerializer(serializers.ModelSerializer):
    """Serializer for Parking that enforces business rules and permissions."""

    owner = serializers.PrimaryKeyRelatedField(read_only=True)
    owner_username = serializers.ReadOnlyField(source="owner.username")
    photos = serializers.ListField(
        child=serializers.URLField(max_length=1024),
        required=False,
    )

    class Meta:
        model = Parking
        fields = [
            "id",
            "owner",
            "owner_username",
            "title",
            "description",
            "street_address",
            "postal_code",
            "city",
            "parking_type",
            "is_covered",
            "has_ev_charger",
            "is_secure",
            "is_lit",
            "price_hour",
            "price_day",
            "photos",
            "latitude",
            "longitude",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["owner", "created_at", "updated_at"]

    def create(self, validated_data):
        """Create a parking owned by the authenticated user if allowed."""
        request = self.context.get("request")
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            raise serializers.ValidationError({"detail": "Authentication required."})
        if not getattr(user, "can_list", False):
            raise serializers.ValidationError({"detail": "You are not allowed to list parkings."})
        validated_data["owner"] = user
        return super().create(validated_data)

    def update(self, instance, validated_data):
        """Allow updates only when performed by the owner."""
        request = self.context.get("request")
        user = getattr(request, "user", None)
        if not user or instance.owner_id != getattr(user, "id", None):
            raise serializers.ValidationError(
                {"detail": "You do not have permission to modify this parking."}
            )
        validated_data.pop("owner", None)
        return super().update(instance, validated_data)

    def validate_title(self, value):
        if not value or len(value.strip()) < 3:
            raise serializers.ValidationError("Title must be at least 3 characters.")
        return value.strip()

    def validate_price_hour(self, value):
        if value is None or value <= 0:
            raise serializers.ValidationError("Hourly price must be greater than 0.")
        return value

    def validate_price_day(self, value):
        if value is not None and value <= 0:
            raise serializers.ValidationError("Daily price must be greater than 0.")
        return value

    def validate(self, attrs):
        latitude = attrs.get("latitude")
        longitude = attrs.get("longitude")
        if latitude is not None and not -90 <= latitude <= 90:
            raise serializers.ValidationError({"latitude": "Latitude must be within [-90, 90]."})
        if longitude is not None and not -180 <= longitude <= 180:
            raise serializers.ValidationError({"longitude": "Longitude must be within [-180, 180]."})
        return attrs


class BlackoutSerializer(serializers.ModelSerializer):
    class Meta:
        model = Blackout
        fields = ["id", "parking", "start_time", "end_time", "reason", "created_at"]
        read_only_fields = ["parking", "created_at"]

    def validate(self, attrs):
        validate_blackout_window(attrs.get("start_time"), attrs.get("end_time"))
        return attrs
