"""
Unit Tests for the Trust Accounting Service

Tests cover:
1. Trust account administration
2. Client ledger lifecycle
3. Period locks
4. Transaction queries and the audit export
"""

from datetime import date

import pytest

from trust.config import TrustSettings
from trust.errors import AccountNotActive, AccountNotFound, LedgerNotActive, LedgerNotEmpty, PeriodLocked
from trust.models import AccountStatusRequest, LedgerStatus, PeriodLockRequest, TrustAccountStatus
from trust.service import TrustAccountingService

from conftest import CLERK, PARTNER, deposit, open_ledger, request_withdrawal


class TestAccounts:
    """Tests for trust bank accounts."""

    def test_account_number_is_masked(self, account):
        assert account.account_number_masked == "********6789"
        assert account.jurisdiction == "NY"
        assert account.current_balance_cents == 0
        assert account.status == TrustAccountStatus.ACTIVE

    def test_unknown_account(self, service):
        with pytest.raises(AccountNotFound):
            service.get_account("missing")

    def test_account_with_funds_cannot_close(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 100})

        with pytest.raises(LedgerNotEmpty):
            service.set_account_status(account.id, AccountStatusRequest(status=TrustAccountStatus.CLOSED), CLERK)

    def test_closed_account_is_final(self, service, account):
        closed = service.set_account_status(
            account.id, AccountStatusRequest(status=TrustAccountStatus.CLOSED, reason="bank change"), PARTNER
        )

        assert closed.closed_by == PARTNER
        with pytest.raises(AccountNotActive):
            service.set_account_status(account.id, AccountStatusRequest(status=TrustAccountStatus.ACTIVE), PARTNER)

    def test_reactivation(self, service, account, ledgers):
        l1, _ = ledgers
        service.set_account_status(account.id, AccountStatusRequest(status=TrustAccountStatus.INACTIVE), CLERK)
        service.set_account_status(account.id, AccountStatusRequest(status=TrustAccountStatus.ACTIVE), CLERK)

        deposit(service, account, {l1: 100})

        assert service.get_account(account.id).current_balance_cents == 100


class TestLedgers:
    """Tests for the client ledger lifecycle."""

    def test_ledgers_listed_per_account(self, service, account, other_account, ledgers):
        open_ledger(service, other_account, "client-c")

        assert [ledger.client_id for ledger in service.list_ledgers(account.id)] == ["client-a", "client-b"]
        assert len(service.list_ledgers()) == 3

    def test_freeze_and_unfreeze(self, service, account, ledgers):
        l1, _ = ledgers
        frozen = service.freeze_ledger(l1.id, PARTNER, "fee dispute")
        assert frozen.status == LedgerStatus.FROZEN

        active = service.unfreeze_ledger(l1.id, PARTNER, "resolved")
        assert active.status == LedgerStatus.ACTIVE

    def test_ledger_with_funds_cannot_close(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 100})

        with pytest.raises(LedgerNotEmpty) as exc_info:
            service.close_ledger(l1.id, PARTNER)

        assert exc_info.value.data["balance_cents"] == 100
        assert "$1.00" in exc_info.value.message

    def test_closed_ledger_cannot_reopen(self, service, account, ledgers):
        l1, _ = ledgers
        closed = service.close_ledger(l1.id, PARTNER, "matter concluded")
        assert closed.closed_reason == "matter concluded"

        with pytest.raises(LedgerNotActive):
            service.unfreeze_ledger(l1.id, PARTNER)

    def test_lifecycle_changes_are_audited(self, service, account, ledgers):
        l1, _ = ledgers
        service.freeze_ledger(l1.id, PARTNER, "fee dispute")

        entries = service.audit_log(action="trust.ledger.freeze").entries
        assert len(entries) == 1
        assert entries[0].previous_state["status"] == "ACTIVE"
        assert entries[0].new_state["status"] == "FROZEN"
        assert entries[0].ledger_id == l1.id


class TestPeriodLocks:
    """Tests for closed accounting periods."""

    def test_lock_outside_today_leaves_postings_open(self, service, account, ledgers):
        l1, _ = ledgers
        service.lock_period(PeriodLockRequest(period_start=date(2024, 2, 1), period_end=date(2024, 2, 29)), PARTNER)

        deposit(service, account, {l1: 100})

        assert [lock.period_end for lock in service.list_period_locks()] == [date(2024, 2, 29)]

    def test_lock_blocks_voids(self, service, account, ledgers):
        l1, _ = ledgers
        posted = deposit(service, account, {l1: 100}).transaction
        service.lock_period(PeriodLockRequest(period_start=date(2024, 3, 1), period_end=date(2024, 3, 31)), PARTNER)

        with pytest.raises(PeriodLocked):
            service.void(posted.id, "late correction", PARTNER)

    def test_inverted_period_rejected(self):
        with pytest.raises(ValueError):
            PeriodLockRequest(period_start=date(2024, 3, 31), period_end=date(2024, 3, 1))


class TestQueries:
    """Tests for read-only queries."""

    def test_recent_transactions_newest_first_and_limited(self, service, account, ledgers, clock):
        l1, _ = ledgers
        posted = []
        for cents in (100, 200, 300):
            posted.append(deposit(service, account, {l1: cents}).transaction)
            clock.advance(minutes=1)

        recent = service.list_transactions(account.id, limit=2)

        assert [tx.id for tx in recent] == [posted[2].id, posted[1].id]

    def test_limit_is_clamped(self, clock):
        small = TrustAccountingService(
            settings=TrustSettings(default_page_size=2, max_page_size=3, log_json=False), clock=clock
        )

        assert small.settings.clamp_limit(None) == 2
        assert small.settings.clamp_limit(0) == 2
        assert small.settings.clamp_limit(50) == 3

    def test_transaction_detail_includes_lines(self, service, account, ledgers):
        l1, l2 = ledgers
        posted = deposit(service, account, {l1: 700, l2: 300}).transaction

        detail = service.get_transaction(posted.id)

        assert detail.transaction.id == posted.id
        assert sorted(line.amount_cents for line in detail.allocations) == [300, 700]
        assert detail.reversal is None
        assert detail.earned_fee_event is None

    def test_audit_export_filters_and_pages(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 10_000})
        request_withdrawal(service, account, l1, 1_000)

        everything = service.audit_log(account_id=account.id)
        page = service.audit_log(account_id=account.id, limit=1, offset=1)

        assert everything.total_count == 5
        assert [entry.action for entry in everything.entries] == [
            "trust.account.create",
            "trust.ledger.create",
            "trust.ledger.create",
            "trust.deposit",
            "trust.withdrawal.request",
        ]
        assert page.total_count == 5
        assert [entry.action for entry in page.entries] == ["trust.ledger.create"]
