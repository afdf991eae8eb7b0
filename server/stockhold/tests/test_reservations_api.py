from datetime import datetime, timedelta

from stockhold.tests.factories import add_inventory


def _seed_inventory(session_factory, **kwargs):
    db = session_factory()
    add_inventory(db, **kwargs)
    db.commit()
    db.close()


def _create(client, quantity="4", **overrides):
    payload = {
        "product_id": 1,
        "location_id": 1,
        "quantity": quantity,
        "reference_type": "allocation",
        "reserved_for": "Showroom display",
    }
    payload.update(overrides)
    return client.post("/api/reservations", json=payload)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_organization_are_rejected(client):
    response = client.get("/api/reservations", headers={"X-Organization-Id": ""})

    assert response.status_code in (400, 422)


def test_create_release_and_read_back(client, session_factory):
    _seed_inventory(session_factory, on_hand="10")

    created = _create(client)
    assert created.status_code == 201
    reservation = created.json()
    assert reservation["status"] == "active"
    assert reservation["remaining_quantity"] == "4.00"
    assert reservation["created_by"] == 7

    released = client.post(f"/api/reservations/{reservation['id']}/release", json={"quantity": "1.5"})
    assert released.status_code == 200
    assert released.json()["status"] == "partial"

    fetched = client.get(f"/api/reservations/{reservation['id']}").json()
    assert fetched["released_quantity"] == "1.50"

    movements = client.get(f"/api/reservations/{reservation['id']}/movements").json()
    assert [m["movement_type_code"] for m in movements] == ["501", "502"]

    available = client.get("/api/inventory/available", params={"product_id": 1, "location_id": 1}).json()
    assert available["available_quantity"] == "7.50"


def test_insufficient_stock_returns_structured_error(client, session_factory):
    _seed_inventory(session_factory, on_hand="3")

    response = _create(client, quantity="5")

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_STOCK"
    assert detail["retryable"] is False
    assert detail["validation"]["is_valid"] is False
    assert client.get("/api/reservations").json() == []


def test_over_release_and_terminal_conflicts(client, session_factory):
    _seed_inventory(session_factory, on_hand="10")
    reservation_id = _create(client).json()["id"]

    over = client.post(f"/api/reservations/{reservation_id}/release", json={"quantity": "5"})
    assert over.status_code == 400
    assert over.json()["detail"]["code"] == "OVER_RELEASE"

    cancelled = client.post(f"/api/reservations/{reservation_id}/cancel", json={"reason": "Display removed"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"/api/reservations/{reservation_id}/cancel", json={"reason": "Again"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "ALREADY_CANCELLED"


def test_unknown_reservation_is_404(client):
    response = client.get("/api/reservations/999")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "RESERVATION_NOT_FOUND"


def test_reservations_are_scoped_to_organization(client, session_factory):
    _seed_inventory(session_factory, on_hand="10")
    reservation_id = _create(client).json()["id"]

    response = client.get(f"/api/reservations/{reservation_id}", headers={"X-Organization-Id": "2"})

    assert response.status_code == 404
    assert client.get("/api/reservations", headers={"X-Organization-Id": "2"}).json() == []


def test_list_filters_and_stats(client, session_factory):
    _seed_inventory(session_factory, on_hand="20")
    first = _create(client, quantity="2", reference_type="transfer").json()
    _create(client, quantity="3")
    client.post(f"/api/reservations/{first['id']}/cancel", json={"reason": "Transfer aborted"})

    active = client.get("/api/reservations", params={"status": ["active", "partial"]}).json()
    transfers = client.get("/api/reservations", params={"reference_type": "transfer"}).json()
    stats = client.get("/api/reservations/stats").json()

    assert len(active) == 1
    assert [r["id"] for r in transfers] == [first["id"]]
    assert stats["total_active"] == 1
    assert stats["total_cancelled"] == 1


def test_sweep_endpoint_expires_overdue_reservations(client, session_factory):
    _seed_inventory(session_factory, on_hand="10")
    overdue = (datetime.utcnow() - timedelta(hours=2)).isoformat()
    reservation_id = _create(client, expires_at=overdue).json()["id"]

    response = client.post("/api/reservations/sweep")

    assert response.status_code == 200
    body = response.json()
    assert body["expired_count"] == 1
    assert body["reservations"][0]["id"] == reservation_id
    assert body["reservations"][0]["status"] == "expired"


def test_validate_endpoint(client, session_factory):
    _seed_inventory(session_factory, on_hand="11")

    response = client.post(
        "/api/inventory/validate",
        json={"product_id": 1, "location_id": 1, "requested_quantity": "10"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_valid"] is True
    assert len(body["warnings"]) == 1


def test_sales_order_lifecycle_over_http(client, session_factory):
    _seed_inventory(session_factory, on_hand="10")
    order = client.post(
        "/api/sales-orders",
        json={
            "customer_name": "Acme Corp",
            "items": [
                {"product_id": 1, "location_id": 1, "quantity_ordered": "4", "product_name": "Widget"},
                {"product_id": 1, "quantity_ordered": "1", "product_name": "Widget"},
            ],
        },
    ).json()
    assert order["status"] == "draft"
    assert order["allowed_transitions"] == ["pending", "cancelled"]

    invalid = client.patch(f"/api/sales-orders/{order['id']}/status", json={"status": "fulfilled"})
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "INVALID_TRANSITION"

    client.patch(f"/api/sales-orders/{order['id']}/status", json={"status": "pending"})
    confirmed = client.patch(f"/api/sales-orders/{order['id']}/status", json={"status": "confirmed"})
    assert confirmed.status_code == 200
    body = confirmed.json()
    assert [item["outcome"] for item in body["items"]] == ["reserved", "skipped"]

    item_id = body["order"]["items"][0]["id"]
    released = client.post(f"/api/sales-orders/items/{item_id}/release", json={"quantity": "4"})
    assert released.status_code == 200
    assert released.json()["quantity_fulfilled"] == "4.00"

    no_reservation = client.post(
        f"/api/sales-orders/items/{body['order']['items'][1]['id']}/release",
        json={"quantity": "1"},
    )
    assert no_reservation.status_code == 409
    assert no_reservation.json()["detail"]["code"] == "NO_RESERVATION"

    blocked_delete = client.delete(f"/api/sales-orders/{order['id']}")
    assert blocked_delete.status_code == 409


def test_sales_order_update_over_http(client):
    order = client.post(
        "/api/sales-orders",
        json={"customer_name": "Acme Corp", "items": [{"product_id": 1, "location_id": 1, "quantity_ordered": "2"}]},
    ).json()

    updated = client.patch(f"/api/sales-orders/{order['id']}", json={"customer_name": "Globex"})
    assert updated.status_code == 200
    assert updated.json()["customer_name"] == "Globex"
    assert updated.json()["items"][0]["quantity_ordered"] == "2.00"

    client.patch(f"/api/sales-orders/{order['id']}/status", json={"status": "cancelled"})
    blocked = client.patch(f"/api/sales-orders/{order['id']}", json={"customer_name": "Initech"})
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["code"] == "SALES_ORDER_IMMUTABLE"
