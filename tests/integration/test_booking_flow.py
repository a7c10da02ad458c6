# tests/integration/test_booking_flow.py

from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.domain.values import ProviderNotification

ADMIN = {"X-Actor-Id": "admin-1"}


def _create_unit(client, unit_id="U1", **overrides):
    body = {
        "host_id": "host-1",
        "title": "Lekki loft",
        "currency": "NGN",
        "booking_mode": "instant",
        "nightly_price_minor": 40000,
    }
    body.update(overrides)
    response = client.put(f"/units/{unit_id}", json=body)
    assert response.status_code == 200
    return response.json()


def _book(client, date_from="2026-03-10", date_to="2026-03-13", guest_id="guest-1", unit_id="U1"):
    return client.post(
        "/bookings",
        json={
            "unit_id": unit_id,
            "guest_id": guest_id,
            "date_from": date_from,
            "date_to": date_to,
        },
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200


def test_full_booking_flow(client, sender):
    _create_unit(client)

    # 1. Create booking
    response = _book(client)
    assert response.status_code == 201
    booking = response.json()
    booking_id = booking["booking_id"]
    assert booking["status"] == "pending_payment"
    assert booking["total_amount_minor"] == 120000
    assert booking["nights"] == 3
    assert booking["expires_at"] is not None

    # 2. Overlapping stay is refused
    response = _book(client, "2026-03-12", "2026-03-14", guest_id="guest-2")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "DATES_UNAVAILABLE"

    # 3. Back-to-back stay is fine
    response = _book(client, "2026-03-13", "2026-03-15", guest_id="guest-2")
    assert response.status_code == 201

    # 4. Start payment
    response = client.post(
        f"/bookings/{booking_id}/payments",
        json={"guest_id": "guest-1", "provider": "fakepay"},
    )
    assert response.status_code == 200
    attempt = response.json()
    reference = attempt["provider_reference"]
    assert attempt["status"] == "initiated"
    assert attempt["redirect_url"] == f"https://pay.example/{reference}"
    assert reference.startswith("shl_") and reference.endswith("_1")

    # 5. Provider reports success
    notification = {
        "provider": "fakepay",
        "reference": reference,
        "status": "succeeded",
        "amount_minor": 120000,
        "currency": "NGN",
    }
    response = client.post("/payments/notifications", json=notification)
    assert response.status_code == 200
    result = response.json()
    assert result["ok"] is True
    assert result["already_succeeded"] is False
    assert result["booking_status"] == "confirmed"
    confirmed_at = result["confirmed_at"]

    # 6. Duplicate delivery is a no-op
    response = client.post("/payments/notifications", json=notification)
    duplicate = response.json()
    assert duplicate["already_succeeded"] is True
    assert duplicate["confirmed_at"] == confirmed_at

    # 7. Booking reads confirmed and holds its dates
    response = client.get(f"/bookings/{booking_id}")
    assert response.json()["status"] == "confirmed"
    assert response.json()["expires_at"] is None

    response = client.get(
        "/units/U1/availability",
        params={"date_from": "2026-03-11", "date_to": "2026-03-12"},
    )
    assert response.json()["available"] is False
    assert response.json()["blocking_ranges"][0]["ref_id"] == booking_id

    # 8. Exactly one notification per kind and audience
    confirmations = [item for item in sender.sent if item[3] == booking_id]
    assert sorted(confirmations) == sorted(
        [
            ("booking_confirmed", "guest", "guest-1", booking_id),
            ("booking_confirmed", "host", "host-1", booking_id),
            ("payout_eligible", "host", "host-1", booking_id),
        ]
    )
    response = client.get("/outbox/events", params={"status_filter": "DELIVERED"})
    assert len(response.json()) == 3


def test_calendar_and_blocks(client):
    _create_unit(client)

    response = client.post(
        "/units/U1/blocks",
        json={"date_from": "2026-03-20", "date_to": "2026-03-22", "reason": "maintenance"},
    )
    assert response.status_code == 200
    block_id = response.json()["id"]

    response = _book(client, "2026-03-21", "2026-03-23")
    assert response.status_code == 409

    response = _book(client, "2026-03-18", "2026-03-20")
    assert response.status_code == 201

    response = client.get(
        "/units/U1/calendar",
        params={"date_from": "2026-03-19", "date_to": "2026-03-23"},
    )
    assert response.json()["unavailable_dates"] == ["2026-03-19", "2026-03-20", "2026-03-21"]

    response = client.delete(f"/units/U1/blocks/{block_id}")
    assert response.status_code == 204
    response = _book(client, "2026-03-21", "2026-03-23")
    assert response.status_code == 201


def test_validation_errors_are_mapped(client):
    _create_unit(client, min_nights=2)

    response = _book(client, "2026-03-10", "2026-03-11")
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "NIGHTS_BELOW_MINIMUM"

    response = _book(client, "2026-03-10", "2026-03-10")
    assert response.json()["detail"]["code"] == "INVALID_DATE_RANGE"

    response = _book(client, unit_id="missing")
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "UNIT_NOT_FOUND"

    response = client.get("/bookings/does-not-exist")
    assert response.status_code == 404


def test_cancel_through_api(client, sender):
    _create_unit(client)
    booking_id = _book(client).json()["booking_id"]

    response = client.post(f"/bookings/{booking_id}/cancel", json={"actor_id": "stranger"})
    assert response.status_code == 403

    response = client.post(
        f"/bookings/{booking_id}/cancel",
        json={"actor_id": "guest-1", "reason": "plans changed"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancel_reason"] == "plans changed"

    response = client.post(f"/bookings/{booking_id}/cancel", json={"actor_id": "admin-1"})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_STATUS"

    # Cancelled dates are free again
    assert _book(client, guest_id="guest-2").status_code == 201


def test_payment_requires_the_guest_and_a_known_provider(client):
    _create_unit(client)
    booking_id = _book(client).json()["booking_id"]

    response = client.post(
        f"/bookings/{booking_id}/payments",
        json={"guest_id": "someone-else", "provider": "fakepay"},
    )
    assert response.status_code == 403

    response = client.post(
        f"/bookings/{booking_id}/payments",
        json={"guest_id": "guest-1", "provider": "paypal"},
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "PROVIDER_NOT_CONFIGURED"


def test_webhook_signature_is_enforced(client):
    _create_unit(client)
    booking_id = _book(client).json()["booking_id"]
    reference = client.post(
        f"/bookings/{booking_id}/payments",
        json={"guest_id": "guest-1", "provider": "fakepay"},
    ).json()["provider_reference"]

    body = {"reference": reference, "status": "success", "amount": 120000, "currency": "NGN"}

    response = client.post("/payments/webhooks/fakepay", json=body)
    assert response.status_code == 403

    response = client.post(
        "/payments/webhooks/fakepay",
        json=body,
        headers={"x-fake-signature": "ok"},
    )
    assert response.status_code == 200
    assert response.json()["booking_status"] == "confirmed"


def test_admin_sweep_endpoints(client):
    response = client.post("/admin/payments/sweep", json={"mode": "batch"})
    assert response.status_code == 403

    response = client.get("/admin/payments/sweep/status", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["version"] is None

    response = client.post("/admin/payments/sweep", json={"mode": "stuck", "limit": 10}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["mode"] == "stuck"

    response = client.get("/admin/payments/sweep/status", headers=ADMIN)
    status_body = response.json()
    assert status_body["version"] == 1
    assert status_body["mode"] == "stuck"
    assert status_body["summary"]["scanned"] == 0

    response = client.post("/admin/payments/sweep", json={"limit": 500}, headers=ADMIN)
    assert response.status_code == 422


def test_admin_manual_reconcile(client, fake_provider):
    _create_unit(client)
    booking_id = _book(client).json()["booking_id"]
    reference = client.post(
        f"/bookings/{booking_id}/payments",
        json={"guest_id": "guest-1", "provider": "fakepay"},
    ).json()["provider_reference"]

    fake_provider.verify_results[reference] = ProviderNotification(
        provider="fakepay",
        reference=reference,
        status=PaymentStatus.SUCCEEDED,
        amount_minor=120000,
        currency="NGN",
    )

    response = client.post(
        "/admin/payments/reconcile",
        json={"provider": "fakepay", "reference": reference},
        headers=ADMIN,
    )
    assert response.status_code == 200
    assert response.json()["reconciled"] == 1
    assert client.get(f"/bookings/{booking_id}").json()["status"] == "confirmed"

    response = client.post(
        "/admin/payments/reconcile",
        json={"provider": "fakepay", "reference": "shl_unknown_1"},
        headers=ADMIN,
    )
    assert response.status_code == 404
