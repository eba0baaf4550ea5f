import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import AuthenticationFailed, PermissionDenied
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .availability import get_availability, replace_availability
from .models import Blackout, Parking
from .serializers import BlackoutSerializer, ParkingSerializer
from .services import search_parkings

logger = logging.getLogger(__name__)

AMENITY_FIELDS = ("is_covered", "has_ev_charger", "is_secure", "is_lit")
PUBLIC_ACTIONS = {"list", "retrieve", "availability"}


class ParkingPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 100


class IsOwnerOrReadOnly(permissions.BasePermission):
    def has_object_permission(self, request, view, obj):
        if request.method in permissions.SAFE_METHODS:
            return True
        return getattr(obj, "owner_id", None) == getattr(request.user, "id", None)


class CanListParkings(permissions.BasePermission):
    def has_permission(self, request, view):
        if request.method == "POST" and getattr(view, "action", None) == "create":
            user = request.user
            return bool(user and user.is_authenticated and getattr(user, "can_list", False))
        return True


def _parse_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class ParkingViewSet(viewsets.ModelViewSet):
    serializer_class = ParkingSerializer
    pagination_class = ParkingPagination
    permission_classes = [
        permissions.IsAuthenticatedOrReadOnly,
        IsOwnerOrReadOnly,
        CanListParkings,
    ]

    def get_permissions(self):
        if getattr(self, "action", None) in PUBLIC_ACTIONS and self.request.method == "GET":
            return [permissions.AllowAny()]
        return [permission() for permission in self.permission_classes]

    def perform_authentication(self, request):
        """Downgrade to anonymous user when public actions receive invalid tokens."""
        try:
            return super().perform_authentication(request)
        except AuthenticationFailed:
            if getattr(self, "action", None) in PUBLIC_ACTIONS and request.method == "GET":
                request._not_authenticated()
                return
            raise

    def get_queryset(self):
        base_qs = Parking.objects.select_related("owner")
        if self.action != "list":
            # Detail routes resolve inactive parkings too so owners can re-enable them.
            return base_qs
        params = self.request.query_params

        price_max_raw = params.get("price_max")
        owner_id_raw = params.get("owner_id")
        try:
            price_max = Decimal(price_max_raw) if price_max_raw not in (None, "") else None
        except InvalidOperation:
            price_max = None
        try:
            owner_id = int(owner_id_raw) if owner_id_raw not in (None, "") else None
        except (TypeError, ValueError):
            owner_id = None

        return search_parkings(
            qs=base_qs,
            q=params.get("q") or None,
            city=params.get("city") or None,
            parking_type=params.get("parking_type") or None,
            price_max=price_max,
            amenities=[field for field in AMENITY_FIELDS if _parse_truthy(params.get(field))],
            owner_id=owner_id,
        )

    def retrieve(self, request, *args, **kwargs):
        instance = self.get_object()
        if not instance.is_active and instance.owner_id != getattr(request.user, "id", None):
            return Response(status=status.HTTP_404_NOT_FOUND)
        return Response(self.get_serializer(instance).data)

    def destroy(self, request, *args, **kwargs):
        """Deactivate instead of deleting so booking history stays intact."""
        instance = self.get_object()
        if instance.is_active:
            instance.is_active = False
            instance.save(update_fields=["is_active", "updated_at"])
            logger.info("parkings: parking %s deactivated by owner", instance.id)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(
        detail=False,
        methods=["get"],
        url_path="mine",
        permission_classes=[IsAuthenticated],
    )
    def mine(self, request):
        """Return the authenticated user's parkings, inactive ones included."""
        qs = Parking.objects.filter(owner=request.user).order_by("-created_at")
        page = self.paginate_queryset(qs)
        if page is not None:
            serializer = self.get_serializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        serializer = self.get_serializer(qs, many=True)
        return Response(serializer.data)

    @action(detail=True, methods=["get", "put"], url_path="availability")
    def availability(self, request, pk=None):
        """Read or fully replace the weekly availability template."""
        if request.method == "GET":
            return Response({"parking": int(pk), "slots": get_availability(int(pk))})

        raw_slots = request.data.get("slots") if isinstance(request.data, dict) else request.data
        try:
            replace_availability(int(pk), request.user, raw_slots)
        except ValidationError as exc:
            return Response(exc.message_dict, status=status.HTTP_400_BAD_REQUEST)
        return Response({"parking": int(pk), "slots": get_availability(int(pk))})

    @action(detail=True, methods=["get", "post"], url_path="blackouts")
    def blackouts(self, request, pk=None):
        parking = self._owned_parking(request, pk)
        if request.method == "GET":
            serializer = BlackoutSerializer(parking.blackouts.all(), many=True)
            return Response(serializer.data)

        serializer = BlackoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        serializer.save(parking=parking)
        return Response(serializer.data, status=status.HTTP_201_CREATED)

    @action(
        detail=True,
        methods=["delete"],
        url_path=r"blackouts/(?P<blackout_id>[^/.]+)",
    )
    def blackout_delete(self, request, pk=None, blackout_id=None):
        parking = self._owned_parking(request, pk)
        blackout = get_object_or_404(Blackout, pk=blackout_id, parking=parking)
        blackout.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)

    def _owned_parking(self, request, pk) -> Parking:
        parking = get_object_or_404(Parking, pk=pk)
        if parking.owner_id != getattr(request.user, "id", None):
            raise PermissionDenied("Only the parking owner can manage blackouts.")
        return parking
