from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .api import ParkingViewSet

app_name = "parkings"

router = DefaultRouter()
router.register("", ParkingViewSet, basename="parking")

urlpatterns = [
    path("", include(router.urls)),
]
