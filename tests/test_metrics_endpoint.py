from tests.conftest import AREA_ID, CLEANING_SERVICE_ID, customer_headers, upcoming_start
from servicebook.infra.metrics import Metrics
from servicebook.main import app
from servicebook.settings import settings


def test_metrics_endpoint_requires_token_when_configured(client):
    settings.metrics_token = "secret-token"

    unauthorized = client.get("/metrics")
    assert unauthorized.status_code == 401

    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200


def test_booking_counters_are_exported(client):
    settings.metrics_token = None
    client.post(
        "/v1/bookings",
        json={
            "service_id": CLEANING_SERVICE_ID,
            "area_id": AREA_ID,
            "starts_at": upcoming_start(1, 10).isoformat(),
        },
        headers=customer_headers(),
    )

    body = client.get("/metrics").text

    assert 'bookings_total{action="created"}' in body
    assert 'slot_holds_total{result="created"}' in body


def test_disabled_metrics_return_404(client, monkeypatch):
    monkeypatch.setattr(app.state, "metrics", Metrics(enabled=False))

    assert client.get("/metrics").status_code == 404


def test_disabled_registry_ignores_records():
    registry = Metrics(enabled=False)
    registry.record_booking("created")
    registry.record_sweep("expire-holds", "expired")

    assert registry.render()[0] == b"metrics_disabled 1\n"
