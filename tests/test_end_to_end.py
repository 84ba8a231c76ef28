import json

import pytest

from tests.conftest import AREA_ID, PLUMBING_PRICE, PLUMBING_SERVICE_ID, customer_headers, upcoming_start, worker_headers
from servicebook.settings import settings

WEBHOOK = "/v1/payments/stripe/webhook"
WORKER = worker_headers("worker-1")


@pytest.fixture(autouse=True)
def webhook_secret():
    settings.stripe_webhook_secret = "whsec_test"


def _settle(client, stripe_stub, event_id, payment):
    event = {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": payment["checkout_session_id"],
                "metadata": {
                    "booking_id": payment["booking_id"],
                    "segment_number": str(payment["segment"]["segment_number"]),
                },
                "payment_status": "paid",
                "payment_intent": f"pi_{event_id}",
                "amount_total": payment["segment"]["amount_cents"],
            }
        },
    }
    stripe_stub.event = event
    response = client.post(WEBHOOK, content=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=test"})
    assert response.json() == {"received": True, "processed": True}


def test_split_gateway_booking_through_completion(client, stripe_stub, admin_credentials):
    first = client.post(
        "/v1/bookings/with-payment",
        json={
            "service_id": PLUMBING_SERVICE_ID,
            "area_id": AREA_ID,
            "starts_at": upcoming_start(3, 11).isoformat(),
            "payment_method": "gateway",
        },
        headers=customer_headers(),
    )
    assert first.status_code == 201
    first = first.json()
    booking_id = first["booking_id"]
    assert first["segment"]["amount_cents"] == 15_000

    _settle(client, stripe_stub, "evt_deposit", first)
    booking = client.get(f"/v1/bookings/{booking_id}", headers=customer_headers()).json()
    assert booking["status"] == "pending_payment"
    assert booking["payment_status"] == "partially_paid"

    second = client.post(
        f"/v1/bookings/{booking_id}/payment-segments/pay",
        json={"segment_number": 2, "payment_method": "gateway"},
        headers=customer_headers(),
    ).json()
    assert second["checkout_session_id"] == "cs_test_2"
    assert second["segment"]["amount_cents"] == 35_000

    _settle(client, stripe_stub, "evt_balance", second)
    booking = client.get(f"/v1/bookings/{booking_id}", headers=customer_headers()).json()
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "paid"

    offer = client.get("/v1/worker/assignments", params={"status": "offered"}, headers=WORKER).json()[0]
    assignment_id = offer["assignment_id"]
    for action in ("accept", "start"):
        assert client.post(f"/v1/worker/assignments/{assignment_id}/{action}", headers=WORKER).status_code == 200
    completed = client.post(
        f"/v1/worker/assignments/{assignment_id}/complete",
        json={"otp": booking["completion_otp"]},
        headers=WORKER,
    )
    assert completed.json()["status"] == "completed"

    detail = client.get(f"/v1/admin/bookings/{booking_id}", headers=admin_credentials.viewer).json()
    assert detail["booking"]["status"] == "completed"
    assert detail["booking"]["completion_otp"] is None
    assert [segment["status"] for segment in detail["segments"]] == ["paid", "paid"]
    assert [entry["kind"] for entry in detail["ledger"]] == ["payment", "payment"]
    assert sum(entry["amount_cents"] for entry in detail["ledger"]) == PLUMBING_PRICE
    assert [item["status"] for item in detail["assignments"]] == ["completed"]
    kinds = {event["kind"] for event in detail["events"]}
    assert {
        "booking.held",
        "booking.pending_payment",
        "booking.confirmed",
        "assignment.offered",
        "booking.assigned",
        "booking.in_progress",
        "booking.completed",
    } <= kinds
