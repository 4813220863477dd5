"""HTTP-level tests for the webhook endpoint and health route."""
from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from backend.app.billing import TransientLookupFailure, WebhookEngine
from backend.app.services.billing import get_webhook_engine
from backend.main import app

from conftest import event_body, sign_payload


@pytest.fixture
def client(engine: WebhookEngine) -> Iterator[TestClient]:
    app.dependency_overrides[get_webhook_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _invoice_paid() -> bytes:
    return event_body("evt_api", "invoice.paid", {"id": "in_api", "subscription": "sub_1"})


def test_health_route_reports_active(client: TestClient) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"status": "active"}


def test_signed_delivery_is_acknowledged(client: TestClient, provider, store) -> None:
    provider.add_plan(metadata={"credits": "50"})
    body = _invoice_paid()

    response = client.post(
        "/webhook",
        content=body,
        headers={"Stripe-Signature": sign_payload(body), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "disposition": "applied", "eventId": "evt_api"}
    assert store._documents["user-1"]["credits"] == 50


def test_unsigned_delivery_is_rejected(client: TestClient, store) -> None:
    response = client.post("/webhook", content=_invoice_paid(), headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["received"] is False
    assert response.json()["disposition"] == "rejected"
    assert store.calls == []


def test_reformatted_body_fails_verification(client: TestClient) -> None:
    body = _invoice_paid()
    header = sign_payload(body)
    reformatted = body.replace(b", ", b",")

    response = client.post("/webhook", content=reformatted, headers={"Stripe-Signature": header})

    assert response.status_code == 400


def test_transient_failure_surfaces_as_server_error(client: TestClient, provider) -> None:
    provider.add_plan(metadata={"credits": "50"})
    provider.failures["sub_1"] = TransientLookupFailure("provider timeout")
    body = _invoice_paid()

    response = client.post("/webhook", content=body, headers={"Stripe-Signature": sign_payload(body)})

    assert response.status_code == 500
    assert response.json() == {"received": False, "disposition": "retry", "eventId": "evt_api"}
