"""API viewsets and permissions for bookings."""

from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from parkings.models import Parking
from payments.stripe_api import (
    StripeConfigurationError,
    StripePaymentError,
    StripeTransientError,
)
from payments_refunds import retry_refund

from .domain import (
    BookingConflict,
    booked_ranges,
    cancel_booking,
    check_availability,
    create_booking,
    expire_pending,
    find_pending_payment,
    preview_cancellation,
    start_checkout,
    verify_checkout,
)
from .filters import BookingFilter
from .models import Booking
from .serializers import (
    AvailabilityQuerySerializer,
    BookingCreateSerializer,
    BookingSerializer,
    CancelSerializer,
    ConfirmPaymentSerializer,
)

logger = logging.getLogger(__name__)


def _stripe_error_response(exc: Exception, booking_id: int, operation: str) -> Response:
    """Translate Stripe failures into API responses."""
    if isinstance(exc, StripeTransientError):
        return Response(
            {"detail": "Temporary payment issue; please retry."},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if isinstance(exc, StripeConfigurationError):
        logger.exception("Stripe configuration error during %s for booking %s", operation, booking_id)
        return Response(
            {"detail": "Payment processor not configured; please try again later."},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    message = str(exc) or "Unable to process payment."
    return Response({"detail": message}, status=status.HTTP_400_BAD_REQUEST)


def _parking_id_param(request) -> tuple[int | None, Response | None]:
    raw = request.query_params.get("parking")
    if not raw:
        return None, Response(
            {"detail": "parking query parameter is required."},
            status=status.HTTP_400_BAD_REQUEST,
        )
    try:
        return int(raw), None
    except (TypeError, ValueError):
        return None, Response(
            {"detail": "parking must be a valid integer."},
            status=status.HTTP_400_BAD_REQUEST,
        )


class IsBookingParticipant(permissions.BasePermission):
    """Allow access only to users tied to the booking."""

    def has_permission(self, request, view) -> bool:
        """Always allow; actual checks happen at object level."""
        return True

    def has_object_permission(self, request, view, obj: Booking) -> bool:
        """Check that the user is the parking owner or the renter."""
        user_id = getattr(request.user, "id", None)
        return user_id in (obj.parking.owner_id, obj.renter_id)


class BookingViewSet(viewsets.ModelViewSet):
    """Booking creation, listing and state transitions."""

    serializer_class = BookingSerializer
    permission_classes = (permissions.IsAuthenticated, IsBookingParticipant)
    http_method_names = ["get", "post", "head", "options"]
    filter_backends = [DjangoFilterBackend]
    filterset_class = BookingFilter

    def get_queryset(self):
        """Restrict bookings to the authenticated participant."""
        user = self.request.user
        if not user.is_authenticated:
            return Booking.objects.none()
        qs = Booking.objects.select_related("parking", "parking__owner", "renter").filter(
            Q(parking__owner=user) | Q(renter=user)
        )
        role = self.request.query_params.get("role")
        if role == "renter":
            qs = qs.filter(renter=user)
        elif role == "owner":
            qs = qs.filter(parking__owner=user)
        return qs.order_by("-created_at")

    def get_object(self):
        """Fetch a single booking and enforce participant permissions."""
        obj = get_object_or_404(
            Booking.objects.select_related("parking", "parking__owner", "renter"),
            pk=self.kwargs["pk"],
        )
        self.check_object_permissions(self.request, obj)
        return obj

    def create(self, request, *args, **kwargs):
        """Create a pending-payment booking for the authenticated renter."""
        serializer = BookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            booking = create_booking(
                renter=request.user,
                parking_id=data["parking"],
                start_time=data["start_time"],
                end_time=data["end_time"],
                expected_price=data.get("expected_price"),
                currency=data.get("currency") or None,
            )
        except BookingConflict as exc:
            return Response(exc.message_dict, status=status.HTTP_409_CONFLICT)
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        return Response(self.get_serializer(booking).data, status=status.HTTP_201_CREATED)

    @action(
        detail=False,
        methods=["get"],
        url_path="availability",
        permission_classes=[permissions.AllowAny],
    )
    def availability(self, request, *args, **kwargs):
        """Report whether a parking can be booked for [start, end)."""
        query = AvailabilityQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        data = query.validated_data
        parking = get_object_or_404(Parking, pk=data["parking"])
        result = check_availability(parking, data["start"], data["end"])
        response = Response(result.as_dict(), status=status.HTTP_200_OK)
        response["Cache-Control"] = "no-store"
        return response

    @action(
        detail=False,
        methods=["get"],
        url_path="booked-ranges",
        permission_classes=[permissions.AllowAny],
    )
    def calendar_ranges(self, request, *args, **kwargs):
        """Return blocking [start, end) ranges for a parking calendar."""
        parking_id, error = _parking_id_param(request)
        if error is not None:
            return error
        parking = get_object_or_404(Parking.objects.filter(is_active=True), pk=parking_id)
        response = Response(booked_ranges(parking.id), status=status.HTTP_200_OK)
        response["Cache-Control"] = "no-store"
        return response

    @action(detail=False, methods=["get"], url_path="pending-payment")
    def pending_payment(self, request, *args, **kwargs):
        """Return the caller's unexpired pending booking on a parking, or null."""
        parking_id, error = _parking_id_param(request)
        if error is not None:
            return error
        booking = find_pending_payment(request.user, parking_id)
        data = self.get_serializer(booking).data if booking is not None else None
        return Response({"booking": data}, status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"], url_path="unseen-count")
    def unseen_count(self, request, *args, **kwargs):
        """Count bookings on the caller's parkings created after ``since`` (all when absent)."""
        qs = Booking.objects.filter(parking__owner=request.user)
        raw_since = (request.query_params.get("since") or "").strip()
        if raw_since:
            try:
                since = parse_datetime(raw_since)
            except ValueError:
                since = None
            if since is None:
                return Response(
                    {"detail": "since must be an ISO 8601 datetime."},
                    status=status.HTTP_400_BAD_REQUEST,
                )
            if timezone.is_naive(since):
                since = timezone.make_aware(since)
            qs = qs.filter(created_at__gt=since)
        return Response({"unseen": qs.count()}, status=status.HTTP_200_OK)

    def retrieve(self, request, *args, **kwargs):
        """Return a booking, expiring its payment hold first if it lapsed."""
        booking = self.get_object()
        if booking.is_payment_hold_expired(timezone.now()):
            expire_pending(booking.id)
            booking.refresh_from_db()
        return Response(self.get_serializer(booking).data)

    @action(detail=True, methods=["post"], url_path="checkout")
    def checkout(self, request, *args, **kwargs):
        """Start or resume the Stripe Checkout session for a pending booking."""
        booking = self.get_object()
        try:
            session = start_checkout(booking.id, request.user)
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        except (StripeTransientError, StripeConfigurationError, StripePaymentError) as exc:
            return _stripe_error_response(exc, booking.id, "checkout")
        return Response(
            {
                "booking_id": booking.id,
                "session_id": session["session_id"],
                "url": session["url"],
                "payment_expires_at": session["payment_expires_at"],
                "reused": session["reused"],
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="confirm-payment")
    def confirm_payment(self, request, *args, **kwargs):
        """Confirm a booking from the checkout redirect once Stripe reports it paid."""
        booking = self.get_object()
        serializer = ConfirmPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            booking = verify_checkout(
                booking.id,
                request.user,
                serializer.validated_data.get("session_id", ""),
            )
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        except (StripeTransientError, StripeConfigurationError, StripePaymentError) as exc:
            return _stripe_error_response(exc, booking.id, "payment verification")
        return Response(self.get_serializer(booking).data, status=status.HTTP_200_OK)

    @action(detail=True, methods=["get"], url_path="cancel-preview")
    def cancel_preview(self, request, *args, **kwargs):
        """Show the refund outcome of cancelling now without changing anything."""
        booking = self.get_object()
        serializer = CancelSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        try:
            preview = preview_cancellation(
                request.user, booking.id, serializer.validated_data.get("role")
            )
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        return Response(preview, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, *args, **kwargs):
        """Cancel a booking as renter or owner."""
        booking = self.get_object()
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = cancel_booking(request.user, booking.id, serializer.validated_data.get("role"))
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        booking.refresh_from_db()
        payload = result.as_dict()
        payload["booking"] = self.get_serializer(booking).data
        return Response(payload, status=status.HTTP_200_OK)

    @action(
        detail=True,
        methods=["post"],
        url_path="retry-refund",
        permission_classes=[permissions.IsAdminUser],
    )
    def refund_retry(self, request, *args, **kwargs):
        """Staff-only: re-run a refund that failed at the payment processor."""
        booking = get_object_or_404(Booking.objects.select_related("parking"), pk=kwargs["pk"])
        try:
            booking = retry_refund(booking)
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        return Response(self.get_serializer(booking).data, status=status.HTTP_200_OK)


