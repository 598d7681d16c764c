from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Iterator

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from familypay.clock import FrozenClock
from familypay.ledger import InMemoryLedgerStore
from familypay.ops import StructuredLogger
from familypay.service import PaymentAttestationService
from familypay.sweeper import TimeoutSweeper
from familypay.webapp import create_app

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def service(clock: FrozenClock) -> PaymentAttestationService:
    ids = count(1)
    return PaymentAttestationService(
        InMemoryLedgerStore(),
        clock=clock,
        logger=StructuredLogger(clock=clock),
        id_factory=lambda: f"pay-{next(ids)}",
    )


@pytest.fixture
def client(service: PaymentAttestationService, clock: FrozenClock) -> Iterator[TestClient]:
    sweeper = TimeoutSweeper(service.store, clock=clock, manager=service.manager, logger=service.logger)
    with TestClient(create_app(service, sweeper)) as test_client:
        yield test_client


def create_payment(client: TestClient, **overrides) -> dict:
    body = {"parent_id": "parent-1", "student_id": "student-1", "provider": "zelle", "amount": "20.00"}
    body.update(overrides)
    response = client.post("/payments", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_fetch_payment(client: TestClient) -> None:
    created = create_payment(client, note="Books")

    assert created["payment_id"] == "pay-1"
    assert created["amount_requested_cents"] == 2000
    assert created["status"] == "initiated"
    assert created["amount_display"] == "$20.00"
    assert created["time_remaining"] == "2d 0h remaining"

    fetched = client.get("/payments/pay-1")
    assert fetched.status_code == 200
    assert fetched.json()["note"] == "Books"


def test_create_payment_validation_errors(client: TestClient) -> None:
    response = client.post(
        "/payments",
        json={"parent_id": "parent-1", "student_id": "", "provider": "bitcoin", "amount_cents": 50},
    )

    assert response.status_code == 422
    payload = response.json()
    assert payload["error"] == "PaymentValidationError"
    assert "Invalid payment provider: bitcoin" in payload["errors"]

    missing = client.post("/payments", json={"parent_id": "p", "student_id": "s", "provider": "zelle"})
    assert missing.status_code == 422
    assert missing.json()["errors"] == ["Payment amount is required"]

    garbled = client.post("/payments", json={"parent_id": "p", "student_id": "s", "provider": "zelle", "amount": "lots"})
    assert garbled.status_code == 422


def test_confirmation_flow(client: TestClient, clock: FrozenClock) -> None:
    create_payment(client)

    sent = client.post("/payments/pay-1/confirm-sent", json={"actor": "parent-1"})
    assert sent.status_code == 200
    assert sent.json()["applied"] is True
    assert sent.json()["previous_status"] == "initiated"
    assert sent.json()["payment"]["status"] == "confirmed_by_parent"
    assert sent.json()["payment"]["description"] == "Sent by Parent"

    clock.advance(hours=2)
    received = client.post(
        "/payments/pay-1/confirm-received",
        json={"actor": "student-1", "received_cents": 1950},
    )
    payment = received.json()["payment"]
    assert payment["status"] == "confirmed"
    assert payment["student_received_cents"] == 1950
    assert payment["is_final"] is True

    again = client.post("/payments/pay-1/confirm-sent", json={"actor": "parent-1"})
    assert again.status_code == 200
    assert again.json()["applied"] is False


def test_illegal_transition_returns_conflict(client: TestClient) -> None:
    create_payment(client)
    client.post("/payments/pay-1/confirm-sent", json={"actor": "parent-1"})

    response = client.post("/payments/pay-1/cancel", json={"actor": "parent-1"})

    assert response.status_code == 409
    payload = response.json()
    assert payload["error"] == "InvalidStateTransitionError"
    assert payload["detail"] == "Cannot cancel payment with status: confirmed_by_parent"
    assert payload["status"] == "confirmed_by_parent"


def test_unknown_payment_returns_404(client: TestClient) -> None:
    assert client.get("/payments/nope").status_code == 404
    response = client.post("/payments/nope/dispute", json={"actor": "student-1"})
    assert response.status_code == 404


def test_dispute_resolution_endpoints(client: TestClient) -> None:
    create_payment(client)
    client.post("/payments/pay-1/confirm-sent", json={"actor": "parent-1"})

    disputed = client.post("/payments/pay-1/dispute", json={"actor": "student-1"})
    assert disputed.json()["payment"]["status"] == "disputed"

    bad = client.post("/payments/pay-1/resolve", json={"actor": "admin", "outcome": "cancelled"})
    assert bad.status_code == 422

    resolved = client.post("/payments/pay-1/resolve", json={"actor": "admin", "outcome": "confirmed"})
    assert resolved.status_code == 200
    assert resolved.json()["payment"]["status"] == "confirmed"
    assert resolved.json()["payment"]["dispute_resolved_by"] == "admin"


def test_fail_and_retry_endpoints(client: TestClient) -> None:
    create_payment(client)

    failed = client.post("/payments/pay-1/fail", json={"actor": "system", "reason": "Provider outage"})
    assert failed.json()["payment"]["status"] == "failed"

    retried = client.post("/payments/pay-1/retry", json={"actor": "parent-1"})
    assert retried.json()["payment"]["status"] == "initiated"


def test_admin_sweep(client: TestClient, clock: FrozenClock) -> None:
    create_payment(client, provider="cashapp")
    clock.advance(hours=49)

    report = client.post("/admin/sweep")
    assert report.status_code == 200
    assert report.json()["cleaned"] == 1
    assert report.json()["details"][0]["payment_id"] == "pay-1"
    assert client.get("/payments/pay-1").json()["status"] == "timeout"

    stats = client.get("/admin/sweep").json()
    assert stats["last_run"] == clock().isoformat()
    assert stats["next_run"] == (clock() + timedelta(hours=6)).isoformat()
    assert stats["stats"]["total_cleaned"] == 1
