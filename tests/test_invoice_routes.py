from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from invoice_app.config import Settings, get_settings
from invoice_app.dependencies.services import get_clock, reset_dependencies
from invoice_app.main import app
from invoice_app.services.clock import FixedClock
from invoice_app.services.memory_store import reset_database


OWNER = {"X-User-Id": "user-1", "X-User-Email": "owner@example.com"}
STRANGER = {"X-User-Id": "user-2"}
OPERATOR = {"X-User-Id": "ops-1"}


@pytest.fixture(autouse=True)
def _fresh_state():
    reset_database()
    reset_dependencies()
    app.dependency_overrides[get_settings] = lambda: Settings(operator_user_ids=["ops-1"])
    yield
    app.dependency_overrides.clear()
    reset_database()
    reset_dependencies()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _payload(**overrides) -> dict:
    payload = {
        "description": "Re-branding",
        "payment_terms": 1,
        "client_name": "Jensen Huang",
        "client_email": "jensenh@mail.com",
        "sender_address": {
            "street": "19 Union Terrace",
            "city": "London",
            "post_code": "E1 3EZ",
            "country": "United Kingdom",
        },
        "client_address": {
            "street": "106 Kendell Street",
            "city": "Sharrington",
            "post_code": "NR24 5WQ",
            "country": "United Kingdom",
        },
        "items": [{"name": "Brand Guidelines", "quantity": 1, "price": "1800.90"}],
    }
    payload.update(overrides)
    return payload


def _create(client: TestClient, **overrides) -> str:
    response = client.post("/invoices", json=_payload(**overrides), headers=OWNER)
    assert response.status_code == 201
    frontend_id = response.json()["result"]
    listing = client.get("/invoices", headers=OWNER).json()["result"]
    return next(invoice["id"] for invoice in listing if invoice["frontend_id"] == frontend_id)


def test_health_reports_ok(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_requests_without_user_are_rejected(client: TestClient) -> None:
    response = client.get("/invoices")

    assert response.status_code == 401


def test_create_and_fetch_invoice(client: TestClient) -> None:
    response = client.post("/invoices", json=_payload(), headers=OWNER)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["result"] == "INV-00001"

    invoice_id = client.get("/invoices", headers=OWNER).json()["result"][0]["id"]
    response = client.get(f"/invoices/{invoice_id}", headers=OWNER)

    assert response.status_code == 200
    invoice = response.json()["result"]
    assert invoice["status"] == "Draft"
    assert invoice["sender_address"]["street"] == "19 Union Terrace"
    assert invoice["items"][0]["name"] == "Brand Guidelines"


def test_create_with_past_date_is_a_bad_request(client: TestClient) -> None:
    two_days_ago = (datetime.now(timezone.utc).date() - timedelta(days=2)).isoformat()

    response = client.post("/invoices", json=_payload(created_at=two_days_ago), headers=OWNER)

    assert response.status_code == 400
    assert response.json()["error"] == "validation"


def test_malformed_body_is_rejected(client: TestClient) -> None:
    response = client.post("/invoices", json={"description": "no client"}, headers=OWNER)

    assert response.status_code == 422


def test_empty_listing_is_not_found(client: TestClient) -> None:
    response = client.get("/invoices", headers=OWNER)

    assert response.status_code == 404
    assert response.json()["message"] == "No invoices found"


def test_other_users_invoice_is_hidden(client: TestClient) -> None:
    invoice_id = _create(client)

    response = client.get(f"/invoices/{invoice_id}", headers=STRANGER)

    assert response.status_code == 404


def test_delete_by_other_user_is_forbidden(client: TestClient) -> None:
    invoice_id = _create(client)

    response = client.delete(f"/invoices/{invoice_id}", headers=STRANGER)

    assert response.status_code == 403
    assert client.get(f"/invoices/{invoice_id}", headers=OWNER).status_code == 200


def test_status_transitions_over_http(client: TestClient) -> None:
    invoice_id = _create(client)

    rejected = client.patch(f"/invoices/{invoice_id}/paid", headers=OWNER)
    assert rejected.status_code == 200
    assert rejected.json()["message"] == "Invalid Operation."
    assert rejected.json()["error"] == "invalid_transition"

    assert client.patch(f"/invoices/{invoice_id}/pending", headers=OWNER).status_code == 200
    paid = client.patch(f"/invoices/{invoice_id}/paid", headers=OWNER)
    assert paid.json()["message"] == "Invoice marked as paid successfully."

    invoice = client.get(f"/invoices/{invoice_id}", headers=OWNER).json()["result"]
    assert invoice["status"] == "Paid"


def test_editing_pending_invoice_conflicts(client: TestClient) -> None:
    invoice_id = _create(client, is_ready=True)

    response = client.put(f"/invoices/{invoice_id}", json=_payload(description="Edited"), headers=OWNER)

    assert response.status_code == 409
    assert response.json()["message"] == "Pending invoices cannot be edited."


def test_edit_and_delete_draft(client: TestClient) -> None:
    invoice_id = _create(client)

    edited = client.put(f"/invoices/{invoice_id}", json=_payload(description="Edited"), headers=OWNER)
    assert edited.status_code == 200
    assert client.get(f"/invoices/{invoice_id}", headers=OWNER).json()["result"]["description"] == "Edited"

    deleted = client.delete(f"/invoices/{invoice_id}", headers=OWNER)
    assert deleted.status_code == 200
    assert client.get(f"/invoices/{invoice_id}", headers=OWNER).status_code == 404


def test_paged_listing(client: TestClient) -> None:
    for _ in range(3):
        _create(client)

    response = client.get("/invoices/paged", params={"page_number": 2, "page_size": 2}, headers=OWNER)

    assert response.status_code == 200
    page = response.json()["result"]
    assert page["total_count"] == 3
    assert page["total_pages"] == 2
    assert [invoice["frontend_id"] for invoice in page["items"]] == ["INV-00003"]
    assert page["has_previous"] is True
    assert page["has_next"] is False


def test_recurring_generation_is_operator_only(client: TestClient) -> None:
    _create(client, is_recurring=True, recurrence_period="Daily", recurrence_end_date="2099-12-31")

    for headers in (OWNER, STRANGER):
        response = client.post("/invoices/recurring/generate", headers=headers)
        assert response.status_code == 403

    assert client.post("/invoices/recurring/generate").status_code == 401
    assert len(client.get("/invoices", headers=OWNER).json()["result"]) == 1


def test_recurring_generation_runs_for_clock_today(client: TestClient) -> None:
    clock = FixedClock(datetime.now(timezone.utc))
    app.dependency_overrides[get_clock] = lambda: clock
    today = clock.today()
    _create(
        client,
        is_recurring=True,
        recurrence_period="Daily",
        recurrence_end_date=(today + timedelta(days=30)).isoformat(),
    )

    same_day = client.post("/invoices/recurring/generate", headers=OPERATOR)
    assert same_day.status_code == 200
    assert same_day.json()["result"]["generated"] == 0

    clock.set_time(clock.now() + timedelta(days=1))
    tomorrow = (today + timedelta(days=1)).isoformat()
    first = client.post("/invoices/recurring/generate", headers=OPERATOR)
    # A caller-supplied date is not honoured; the run is always for the clock's today.
    far_future = (today + timedelta(days=200)).isoformat()
    second = client.post("/invoices/recurring/generate", params={"run_date": far_future}, headers=OPERATOR)

    assert first.json()["result"]["run_date"] == tomorrow
    assert first.json()["result"]["generated"] == 1
    assert second.json()["result"]["run_date"] == tomorrow
    assert (second.json()["result"]["generated"], second.json()["result"]["skipped"]) == (0, 1)

    listing = client.get("/invoices", headers=OWNER).json()["result"]
    assert sorted(invoice["created_at"][:10] for invoice in listing) == [today.isoformat(), tomorrow]
