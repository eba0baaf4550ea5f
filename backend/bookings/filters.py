import django_filters as filters
from django.utils import timezone

from .models import Booking


class BookingFilter(filters.FilterSet):
    status = filters.CharFilter(field_name="status", lookup_expr="iexact")
    parking = filters.NumberFilter(field_name="parking_id")
    start_after = filters.IsoDateTimeFilter(field_name="start_time", lookup_expr="gte")
    start_before = filters.IsoDateTimeFilter(field_name="start_time", lookup_expr="lt")
    upcoming = filters.BooleanFilter(method="filter_upcoming")

    class Meta:
        model = Booking
        fields = ["status", "parking", "upcoming"]

    def filter_upcoming(self, queryset, name, value):
        if value is None:
            return queryset
        now = timezone.now()
        if value:
            return queryset.filter(end_time__gt=now)
        return queryset.filter(end_time__lte=now)
