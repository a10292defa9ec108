"""
HTTP tests for the Spend Service.

Background tasks are disabled in conftest, so the tests drive maintenance
through the /maintenance endpoints.
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as client:
        yield client


def unique(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def place(client, order_id, customer_id, amount, status="Delivered"):
    return client.post("/commands/orders", json={
        "order_id": order_id,
        "customer_id": customer_id,
        "amount": amount,
        "status": status,
    })


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "spend-service"}


def test_total_spent_follows_the_ledger(client):
    customer = unique("cust")
    o1, o2, o3 = unique("o"), unique("o"), unique("o")
    assert place(client, o1, customer, "100.00").status_code == 200
    assert place(client, o2, customer, "50.00").status_code == 200
    assert place(client, o3, customer, "30.00", "Cancelled").status_code == 200

    reconciled = client.post("/maintenance/reconcile/event")
    assert reconciled.status_code == 200
    assert reconciled.json()["strategy"] == "event"

    body = client.get(f"/queries/customers/{customer}").json()
    assert body["total_spent"] == "150.00"

    patched = client.patch(f"/commands/orders/{o2}", json={"status": "Cancelled"})
    assert patched.status_code == 200
    assert patched.json()["kind"] == "Update"
    client.post("/maintenance/reconcile/event")

    body = client.get(f"/queries/customers/{customer}").json()
    assert body["total_spent"] == "100.00"
    assert client.post("/maintenance/audit", params={"customer_id": customer}).json() == []


def test_orders_query(client):
    customer = unique("cust")
    order = unique("o")
    place(client, order, customer, "12.50", "Pending")

    orders = client.get("/queries/orders", params={"customer_id": customer}).json()

    assert [(o["order_id"], o["amount"], o["status"]) for o in orders] == [
        (order, "12.50", "Pending"),
    ]


def test_delete_order(client):
    customer = unique("cust")
    order = unique("o")
    place(client, order, customer, "20.00")

    response = client.delete(f"/commands/orders/{order}")
    assert response.status_code == 200
    assert response.json()["kind"] == "Delete"
    client.post("/maintenance/reconcile/batch")

    assert client.get(f"/queries/customers/{customer}").json()["total_spent"] == "0.00"
    assert client.delete(f"/commands/orders/{order}").status_code == 404


def test_top_spenders_filter(client):
    big, small = unique("big"), unique("small")
    place(client, unique("o"), big, "90000.00")
    place(client, unique("o"), small, "1.00")
    client.post("/maintenance/rebuild")

    ids = [c["customer_id"] for c in client.get(
        "/queries/customers", params={"min_total": "89999.99"}
    ).json()]

    assert big in ids
    assert small not in ids


def test_duplicate_order_is_rejected(client):
    order = unique("o")
    assert place(client, order, unique("cust"), "5.00").status_code == 200
    assert place(client, order, unique("cust"), "5.00").status_code == 409


def test_invalid_requests(client):
    assert place(client, unique("o"), unique("cust"), "-1.00").status_code == 422
    assert place(client, unique("o"), unique("cust"), "1.005").status_code == 422
    assert place(client, unique("o"), unique("cust"), "1.00", "Refunded").status_code == 422


def test_not_found(client):
    assert client.patch(f"/commands/orders/{unique('o')}", json={"amount": "1.00"}).status_code == 404
    assert client.get(f"/queries/customers/{unique('cust')}").status_code == 404
    assert client.post("/maintenance/reconcile/nightly").status_code == 404


def test_quarantine_listing(client):
    response = client.get("/maintenance/quarantine")
    assert response.status_code == 200
    assert isinstance(response.json(), list)
