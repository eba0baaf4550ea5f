from django.urls import path

from . import api

app_name = "payments_owner"

urlpatterns = [
    path("wallet/", api.owner_wallet, name="owner_wallet"),
    path("earnings/monthly/", api.owner_monthly_earnings, name="owner_monthly_earnings"),
    path(
        "payouts/bookings/<int:booking_id>/record/",
        api.record_booking_payout,
        name="owner_record_booking_payout",
    ),
    path(
        "payouts/bookings/<int:booking_id>/transfer/",
        api.transfer_booking_payout,
        name="owner_transfer_booking_payout",
    ),
    path("connect/account/", api.connect_account, name="owner_connect_account"),
    path("connect/onboarding/", api.connect_onboarding, name="owner_connect_onboarding"),
    path("connect/status/", api.connect_status, name="owner_connect_status"),
]
