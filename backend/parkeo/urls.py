from django.conf import settings
from django.contrib import admin
from django.urls import include, path

from core.health import healthz
from core.pricing import pricing_summary

urlpatterns = [
    path("api/healthz", healthz),
    path("api/pricing/", pricing_summary, name="pricing_summary"),
    path("api/users/", include("users.urls")),
    path("api/parkings/", include("parkings.urls")),
    path("api/bookings/", include(("bookings.urls", "bookings"), namespace="bookings")),
    path("api/payments/", include("payments.urls")),
    path("api/owner/", include("payments.urls_owner")),
]

if settings.ENABLE_DJANGO_ADMIN:
    urlpatterns.insert(0, path("admin/", admin.site.urls))
