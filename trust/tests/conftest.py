from datetime import datetime, timedelta, timezone

import pytest

from trust.config import TrustSettings
from trust.models import (
    AllocationInput,
    CreateLedgerRequest,
    CreateTrustAccountRequest,
    DepositRequest,
    WithdrawalRequest,
)
from trust.service import TrustAccountingService


CLERK = "clerk-1"
PARTNER = "partner-1"
START = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(clock):
    return TrustAccountingService(settings=TrustSettings(dual_control=True, log_json=False), clock=clock)


@pytest.fixture
def account(service):
    return service.create_account(
        CreateTrustAccountRequest(
            name="IOLTA Operating Trust",
            bank_name="First Fidelity",
            account_number="000123456789",
            routing_number="021000021",
            jurisdiction="ny",
        ),
        CLERK,
    )


@pytest.fixture
def other_account(service):
    return service.create_account(
        CreateTrustAccountRequest(
            name="IOLTA Escrow",
            bank_name="First Fidelity",
            account_number="000987654321",
            routing_number="021000021",
            jurisdiction="NY",
        ),
        CLERK,
    )


def open_ledger(service, account, client_id: str):
    return service.create_ledger(CreateLedgerRequest(trust_account_id=account.id, client_id=client_id), CLERK)


@pytest.fixture
def ledgers(service, account):
    return open_ledger(service, account, "client-a"), open_ledger(service, account, "client-b")


def deposit(service, account, split: dict, key: str = None, actor: str = CLERK):
    return service.deposit(
        DepositRequest(
            idempotency_key=key,
            trust_account_id=account.id,
            amount_cents=sum(split.values()),
            payor_payee="Acme Holdings LLC",
            description="Retainer",
            allocations=[AllocationInput(ledger_id=ledger.id, amount_cents=cents) for ledger, cents in split.items()],
        ),
        actor,
    )


def request_withdrawal(service, account, ledger, amount_cents: int, key: str = None, actor: str = CLERK):
    return service.withdraw(
        WithdrawalRequest(
            idempotency_key=key,
            trust_account_id=account.id,
            ledger_id=ledger.id,
            amount_cents=amount_cents,
            payor_payee="County Clerk",
            description="Filing fee",
            check_number="1001",
        ),
        actor,
    )


def ledger_sum(service, account) -> int:
    return sum(ledger.balance_cents for ledger in service.list_ledgers(account.id))
