from tests.conftest import AREA_ID, CLEANING_SERVICE_ID, customer_headers, upcoming_start, worker_headers

WORKER_ONE_HEADERS = worker_headers("worker-1")
WORKER_TWO_HEADERS = worker_headers("worker-2")


def _confirmed_booking(client, *, days_ahead=1, hour=10):
    created = client.post(
        "/v1/bookings",
        json={
            "service_id": CLEANING_SERVICE_ID,
            "area_id": AREA_ID,
            "starts_at": upcoming_start(days_ahead, hour).isoformat(),
        },
        headers=customer_headers(),
    )
    booking_id = created.json()["booking_id"]
    paid = client.post(
        f"/v1/bookings/{booking_id}/payment-segments/pay",
        json={"segment_number": 1, "payment_method": "wallet"},
        headers=customer_headers(),
    )
    assert paid.json()["booking_status"] == "confirmed"
    return booking_id


def _offers(client, headers, status="offered"):
    response = client.get("/v1/worker/assignments", params={"status": status}, headers=headers)
    assert response.status_code == 200
    return response.json()


def test_worker_endpoints_need_the_worker_role(client):
    assert client.get("/v1/worker/assignments", headers=customer_headers()).status_code == 403
    assert client.get("/v1/worker/assignments", headers=worker_headers("worker-9")).status_code == 404


def test_full_job_lifecycle(client):
    booking_id = _confirmed_booking(client)

    offers = _offers(client, WORKER_ONE_HEADERS)
    assert [offer["booking_id"] for offer in offers] == [booking_id]
    assert _offers(client, WORKER_TWO_HEADERS) == []
    assignment_id = offers[0]["assignment_id"]

    accepted = client.post(f"/v1/worker/assignments/{assignment_id}/accept", headers=WORKER_ONE_HEADERS)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    booking = client.get(f"/v1/bookings/{booking_id}", headers=customer_headers()).json()
    assert booking["status"] == "assigned"
    assert booking["worker_id"] == 1

    started = client.post(f"/v1/worker/assignments/{assignment_id}/start", headers=WORKER_ONE_HEADERS)
    assert started.json()["status"] == "started"

    wrong_code = str((int(booking["completion_otp"]) + 1) % 1_000_000).zfill(6)
    wrong = client.post(
        f"/v1/worker/assignments/{assignment_id}/complete", json={"otp": wrong_code}, headers=WORKER_ONE_HEADERS
    )
    assert wrong.status_code == 422
    assert wrong.json()["type"].endswith("/invalid-completion-code")

    completed = client.post(
        f"/v1/worker/assignments/{assignment_id}/complete",
        json={"otp": booking["completion_otp"]},
        headers=WORKER_ONE_HEADERS,
    )
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    final = client.get(f"/v1/bookings/{booking_id}", headers=customer_headers()).json()
    assert final["status"] == "completed"


def test_completion_code_must_be_six_digits(client):
    booking_id = _confirmed_booking(client)
    assignment_id = _offers(client, WORKER_ONE_HEADERS)[0]["assignment_id"]
    assert booking_id

    response = client.post(
        f"/v1/worker/assignments/{assignment_id}/complete", json={"otp": "12ab"}, headers=WORKER_ONE_HEADERS
    )

    assert response.status_code == 422


def test_rejection_passes_the_offer_on(client):
    booking_id = _confirmed_booking(client)
    assignment_id = _offers(client, WORKER_ONE_HEADERS)[0]["assignment_id"]

    rejected = client.post(
        f"/v1/worker/assignments/{assignment_id}/reject", json={"reason": "sick"}, headers=WORKER_ONE_HEADERS
    )

    assert rejected.status_code == 200
    assert rejected.json()["rejection_reason"] == "sick"
    assert [offer["booking_id"] for offer in _offers(client, WORKER_TWO_HEADERS)] == [booking_id]


def test_other_workers_cannot_touch_an_offer(client):
    _confirmed_booking(client)
    assignment_id = _offers(client, WORKER_ONE_HEADERS)[0]["assignment_id"]

    response = client.post(f"/v1/worker/assignments/{assignment_id}/accept", headers=WORKER_TWO_HEADERS)

    assert response.status_code == 404


def test_unavailable_workers_are_skipped(client):
    response = client.put("/v1/worker/availability", json={"is_available": False}, headers=WORKER_ONE_HEADERS)
    assert response.json() == {"worker_id": 1, "is_available": False}

    booking_id = _confirmed_booking(client)

    assert _offers(client, WORKER_ONE_HEADERS) == []
    assert [offer["booking_id"] for offer in _offers(client, WORKER_TWO_HEADERS)] == [booking_id]


def test_buffer_clash_surfaces_as_conflict(client):
    morning = _confirmed_booking(client, hour=10)
    midday = _confirmed_booking(client, hour=12)
    offers = {offer["booking_id"]: offer["assignment_id"] for offer in _offers(client, WORKER_ONE_HEADERS)}

    assert client.post(
        f"/v1/worker/assignments/{offers[morning]}/accept", headers=WORKER_ONE_HEADERS
    ).status_code == 200
    clash = client.post(f"/v1/worker/assignments/{offers[midday]}/accept", headers=WORKER_ONE_HEADERS)

    assert clash.status_code == 409
    assert clash.json()["type"].endswith("/buffer-conflict")
    assert [offer["booking_id"] for offer in _offers(client, WORKER_TWO_HEADERS)] == [midday]


def test_failure_before_start_reoffers(client):
    booking_id = _confirmed_booking(client)
    assignment_id = _offers(client, WORKER_ONE_HEADERS)[0]["assignment_id"]
    client.post(f"/v1/worker/assignments/{assignment_id}/accept", headers=WORKER_ONE_HEADERS)

    failed = client.post(
        f"/v1/worker/assignments/{assignment_id}/fail", json={"reason": "flat tyre"}, headers=WORKER_ONE_HEADERS
    )

    assert failed.status_code == 200
    assert failed.json()["status"] == "failed"
    booking = client.get(f"/v1/bookings/{booking_id}", headers=customer_headers()).json()
    assert booking["status"] == "confirmed"
    assert booking["worker_id"] is None
    assert [offer["booking_id"] for offer in _offers(client, WORKER_TWO_HEADERS)] == [booking_id]
