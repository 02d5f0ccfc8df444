"""
API Tests

Exercise the HTTP surface end to end against a fresh service per test.
"""

import pytest
from fastapi.testclient import TestClient

from trust.api import app, get_service

from conftest import CLERK, PARTNER

CLERK_HEADERS = {"X-Actor-Id": CLERK}
PARTNER_HEADERS = {"X-Actor-Id": PARTNER}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def funded(client):
    account = client.post(
        "/trust/accounts",
        json={
            "name": "IOLTA Operating Trust",
            "bank_name": "First Fidelity",
            "account_number": "000123456789",
            "routing_number": "021000021",
            "jurisdiction": "NY",
        },
        headers=CLERK_HEADERS,
    ).json()
    ledger = client.post(
        "/trust/ledgers",
        json={"trust_account_id": account["id"], "client_id": "client-a"},
        headers=CLERK_HEADERS,
    ).json()
    response = client.post(
        "/trust/deposit",
        json={
            "idempotency_key": "dep-1",
            "trust_account_id": account["id"],
            "amount_cents": 100_000,
            "payor_payee": "Acme Holdings LLC",
            "description": "Retainer",
            "allocations": [{"ledger_id": ledger["id"], "amount_cents": 100_000}],
        },
        headers=CLERK_HEADERS,
    )
    assert response.status_code == 201
    return account, ledger


def withdraw(client, account, ledger, amount_cents):
    return client.post(
        "/trust/withdrawal",
        json={
            "trust_account_id": account["id"],
            "ledger_id": ledger["id"],
            "amount_cents": amount_cents,
            "payor_payee": "County Clerk",
            "description": "Filing fee",
        },
        headers=CLERK_HEADERS,
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestPostingRoutes:
    """Tests for the posting and workflow routes."""

    def test_deposit_updates_balances(self, client, funded):
        account, ledger = funded

        assert client.get(f"/trust/accounts/{account['id']}").json()["current_balance_cents"] == 100_000
        assert client.get(f"/trust/ledgers/{ledger['id']}").json()["balance_cents"] == 100_000

    def test_withdraw_approve_void(self, client, funded):
        account, ledger = funded
        pending = withdraw(client, account, ledger, 40_000).json()["transaction"]

        approved = client.post(f"/trust/transactions/{pending['id']}/approve", json={}, headers=PARTNER_HEADERS)
        assert approved.status_code == 200
        assert approved.json()["ledger_balances"] == {ledger["id"]: 60_000}

        voided = client.post(
            f"/trust/transactions/{pending['id']}/void", json={"reason": "check lost"}, headers=PARTNER_HEADERS
        )
        assert voided.status_code == 200
        assert voided.json()["original"]["status"] == "VOIDED"
        assert voided.json()["reversal"]["entry"] == {"kind": "reversal", "original_tx_id": pending["id"]}

        detail = client.get(f"/trust/transactions/{pending['id']}").json()
        assert detail["reversal"]["id"] == voided.json()["reversal"]["id"]

    def test_pending_queue(self, client, funded):
        account, ledger = funded
        pending = withdraw(client, account, ledger, 10_000).json()["transaction"]

        queue = client.get("/trust/transactions", params={"account_id": account["id"], "pending_only": True}).json()

        assert [tx["id"] for tx in queue] == [pending["id"]]


class TestErrorMapping:
    """Tests for how domain errors surface over HTTP."""

    def test_missing_actor_header(self, client):
        response = client.post("/trust/accounts", json={})

        assert response.status_code == 422

    def test_not_found(self, client):
        response = client.get("/trust/transactions/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "TRANSACTION_NOT_FOUND"

    def test_insufficient_funds(self, client, funded):
        account, ledger = funded
        response = withdraw(client, account, ledger, 100_001)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_FUNDS"
        assert detail["data"]["shortfall_cents"] == 1

    def test_duplicate_submission(self, client, funded):
        account, ledger = funded
        response = client.post(
            "/trust/deposit",
            json={
                "idempotency_key": "dep-1",
                "trust_account_id": account["id"],
                "amount_cents": 100_000,
                "payor_payee": "Acme Holdings LLC",
                "description": "Retainer",
                "allocations": [{"ledger_id": ledger["id"], "amount_cents": 100_000}],
            },
            headers=CLERK_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "DUPLICATE_SUBMISSION"

    def test_self_approval_forbidden(self, client, funded):
        account, ledger = funded
        pending = withdraw(client, account, ledger, 10_000).json()["transaction"]

        response = client.post(f"/trust/transactions/{pending['id']}/approve", json={}, headers=CLERK_HEADERS)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "SELF_APPROVAL_NOT_ALLOWED"


class TestComplianceRoutes:
    """Tests for reconciliation, period locks and the audit export."""

    def test_reconcile_and_sign_off(self, client, funded):
        account, _ = funded
        record = client.post(
            "/trust/reconciliations",
            json={
                "trust_account_id": account["id"],
                "period_end": "2030-12-31",
                "bank_statement_balance_cents": 100_000,
            },
            headers=CLERK_HEADERS,
        )
        assert record.status_code == 201
        assert record.json()["is_reconciled"] is True

        approved = client.post(f"/trust/reconciliations/{record.json()['id']}/approve", headers=PARTNER_HEADERS)
        assert approved.json()["approved_by"] == PARTNER

        listed = client.get("/trust/reconciliations", params={"account_id": account["id"]}).json()
        assert [r["id"] for r in listed] == [record.json()["id"]]

    def test_period_lock_blocks_withdrawal(self, client, funded, clock):
        account, ledger = funded
        today = clock().date().isoformat()
        lock = client.post(
            "/trust/period-locks",
            json={"period_start": today, "period_end": today},
            headers=PARTNER_HEADERS,
        )
        assert lock.status_code == 201

        response = withdraw(client, account, ledger, 1_000)

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "PERIOD_LOCKED"

    def test_audit_export(self, client, funded):
        account, _ = funded

        export = client.get("/trust/audit", params={"account_id": account["id"], "action": "trust.deposit"}).json()

        assert export["total_count"] == 1
        assert export["entries"][0]["actor"] == CLERK
