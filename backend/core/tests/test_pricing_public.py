from decimal import Decimal

from django.test import override_settings


@override_settings(
    PLATFORM_FEE_RATE=Decimal("0.15"),
    RENTER_REFUND_CUTOFF_HOURS=24,
    BOOKING_PENDING_PAYMENT_TTL_MINUTES=10,
    BOOKING_CURRENCY="CHF",
)
def test_pricing_summary_uses_current_settings(client):
    response = client.get("/api/pricing/")

    assert response.status_code == 200
    payload = response.json()
    assert payload["platform_fee_bps"] == 1500
    assert payload["platform_fee_rate"] == 15.0
    assert payload["renter_refund_cutoff_hours"] == 24
    assert payload["pending_payment_ttl_minutes"] == 10
    assert payload["currency"] == "CHF"
    assert payload["enforce_availability"] is False


@override_settings(PLATFORM_FEE_RATE=Decimal("0.125"), RENTER_REFUND_CUTOFF_HOURS=12)
def test_pricing_summary_reflects_overrides(client):
    response = client.get("/api/pricing/")

    payload = response.json()
    assert payload["platform_fee_bps"] == 1250
    assert payload["platform_fee_rate"] == 12.5
    assert payload["renter_refund_cutoff_hours"] == 12


def test_healthz_reports_database(db, client):
    response = client.get("/api/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok"}
