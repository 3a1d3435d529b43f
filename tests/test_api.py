"""Tests for the user request API and the error mapping."""

import pytest
from fastapi.testclient import TestClient

from conftest import ALICE, BOB, NATIVE, STRATEGY, VAULT
from vaultbridge.api.deps import get_ledger, http_error
from vaultbridge.errors import (
    AuthorizationError,
    CrossLedgerCallFailure,
    InsufficientFundsError,
    RequestNotFoundError,
    RequestNotPendingError,
    SchedulingFailure,
)
from vaultbridge.main import app


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, caller=ALICE, amount="10"):
    return client.post(
        "/api/requests",
        headers={"X-Caller-Address": caller},
        json={
            "kind": "create",
            "asset": NATIVE,
            "amount": amount,
            "value": amount,
            "vault_identifier": VAULT,
            "strategy_identifier": STRATEGY,
        },
    )


def test_health(client):
    assert client.get("/api/system/health").json() == {"status": "ok"}


def test_create_and_fetch(client):
    resp = _create(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["user"] == ALICE

    fetched = client.get(f"/api/requests/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]


def test_caller_header_required(client):
    resp = client.post("/api/requests", json={"kind": "close", "asset": NATIVE, "position_id": 1})
    assert resp.status_code == 422


def test_ledger_rejection_is_400(client):
    resp = _create(client, amount="100000")
    assert resp.status_code == 400


def test_cancel_by_someone_else_is_403(client):
    request_id = _create(client).json()["id"]
    resp = client.post(f"/api/requests/{request_id}/cancel", headers={"X-Caller-Address": BOB})
    assert resp.status_code == 403

    resp = client.post(f"/api/requests/{request_id}/cancel", headers={"X-Caller-Address": ALICE})
    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"


def test_unknown_request_is_404(client):
    assert client.get("/api/requests/999").status_code == 404


def test_list_mine_and_balances(client):
    _create(client, amount="10")
    _create(client, caller=BOB, amount="3")
    headers = {"X-Caller-Address": ALICE}

    mine = client.get("/api/requests", headers=headers).json()
    assert [r["user"] for r in mine] == [ALICE]

    balance = client.get(f"/api/requests/balances/{NATIVE}", headers=headers).json()
    assert float(balance["available"]) == 90
    assert float(balance["pending"]) == 10


def test_queue_status(client):
    _create(client, caller=BOB, amount="1")
    _create(client, caller=ALICE, amount="1")
    body = client.get("/api/requests/queue", headers={"X-Caller-Address": ALICE}).json()
    assert body["total_pending"] == 2
    assert body["user_position"] == 1
    assert body["estimated_wait_seconds"] > 0


@pytest.mark.parametrize(
    "exc,code",
    [
        (RequestNotFoundError(1), 404),
        (AuthorizationError("no"), 403),
        (RequestNotPendingError(1, "failed"), 409),
        (SchedulingFailure("broke"), 409),
        (InsufficientFundsError("poor"), 400),
        (CrossLedgerCallFailure("create", "down"), 500),
    ],
)
def test_error_mapping(exc, code):
    assert http_error(exc).status_code == code
