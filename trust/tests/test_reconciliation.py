"""
Unit Tests for Three-Way Reconciliation

Tests cover:
1. Balanced periods and timing adjustments
2. Bank differences and structural imbalances
3. Balances as of the period end
4. Sign-off with dual control
"""

from datetime import date

import pytest

from trust.errors import ReconciliationAlreadyApproved, ReconciliationNotFound, SelfApprovalNotAllowed
from trust.models import DiscrepancyKind, OutstandingItem, ReconcileRequest, evolve

from conftest import CLERK, PARTNER, deposit, request_withdrawal

PERIOD_END = date(2024, 3, 31)


def reconcile(service, account, bank_cents, outstanding=(), in_transit=(), period_end=PERIOD_END, actor=CLERK):
    return service.reconcile(
        ReconcileRequest(
            trust_account_id=account.id,
            period_start=date(period_end.year, period_end.month, 1),
            period_end=period_end,
            bank_statement_balance_cents=bank_cents,
            outstanding_checks=[OutstandingItem(reference=f"chk-{i}", amount_cents=c) for i, c in enumerate(outstanding)],
            deposits_in_transit=[OutstandingItem(reference=f"dit-{i}", amount_cents=c) for i, c in enumerate(in_transit)],
        ),
        actor,
    )


def kinds(record):
    return [item.kind for item in record.exceptions]


class TestReconcile:
    """Tests for computing a reconciliation."""

    def test_balanced_period(self, service, account, ledgers):
        l1, l2 = ledgers
        deposit(service, account, {l1: 600_000, l2: 400_000})

        record = reconcile(service, account, 1_000_000)

        assert record.is_reconciled
        assert record.trust_ledger_balance_cents == 1_000_000
        assert record.client_ledger_sum_balance_cents == 1_000_000
        assert record.discrepancy_amount_cents == 0
        assert record.exceptions == []
        assert record.prepared_by == CLERK

    def test_timing_items_adjust_the_ledger_side(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 1_000_000})

        record = reconcile(service, account, 1_030_000, outstanding=[20_000], in_transit=[50_000])

        assert record.adjusted_ledger_balance_cents == 1_030_000
        assert record.is_reconciled
        assert len(record.outstanding_checks) == 1
        assert len(record.deposits_in_transit) == 1

    def test_bank_difference_is_reported_not_raised(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 1_000_000})

        record = reconcile(service, account, 995_000)

        assert not record.is_reconciled
        assert record.bank_discrepancy_cents == -5_000
        assert record.discrepancy_amount_cents == -5_000
        assert kinds(record) == [DiscrepancyKind.BANK_DIFFERENCE]
        assert [r.id for r in service.list_reconciliations(account.id)] == [record.id]

    def test_ledger_short_of_account_is_flagged(self, service, account, ledgers):
        """$50,000 in the account but client ledgers that only hold $49,800."""
        l1, l2 = ledgers
        deposit(service, account, {l1: 4_980_000, l2: 20_000})
        service.store.put_ledger(evolve(service.get_ledger(l2.id), balance_cents=0))

        record = reconcile(service, account, 5_000_000)

        assert record.trust_ledger_balance_cents == 5_000_000
        assert record.client_ledger_sum_balance_cents == 4_980_000
        assert record.bank_discrepancy_cents == 0
        assert record.structural_discrepancy_cents == 20_000
        assert record.discrepancy_amount_cents == 20_000
        assert not record.is_reconciled
        assert DiscrepancyKind.STRUCTURAL_IMBALANCE in kinds(record)
        structural = [item for item in record.exceptions if item.kind == DiscrepancyKind.STRUCTURAL_IMBALANCE][0]
        assert "$50,000.00" in structural.message
        assert "$49,800.00" in structural.message
        assert [r.id for r in service.list_reconciliations(account.id)] == [record.id]
        assert service.list_reconciliations(account.id)[0].discrepancy_amount_cents == 20_000

    def test_ledger_drift_alone_fails_reconciliation(self, service, account, ledgers):
        """A ledger that disagrees with its own allocations fails even when the totals match."""
        l1, l2 = ledgers
        deposit(service, account, {l1: 4_980_000, l2: 20_000})
        service.store.put_ledger(evolve(service.get_ledger(l1.id), balance_cents=4_990_000))
        service.store.put_ledger(evolve(service.get_ledger(l2.id), balance_cents=10_000))

        record = reconcile(service, account, 5_000_000)

        assert record.structural_discrepancy_cents == 0
        assert record.bank_discrepancy_cents == 0
        assert not record.is_reconciled
        drift = [item for item in record.exceptions if item.kind == DiscrepancyKind.STORED_BALANCE_DRIFT]
        assert sorted((item.ledger_id, item.amount_cents) for item in drift) == sorted(
            [(l1.id, 10_000), (l2.id, -10_000)]
        )

    def test_gap_in_closed_period_is_flagged(self, service, account, ledgers, clock):
        """A March gap still fails March after April activity moves the stored balances on."""
        l1, l2 = ledgers
        posted = deposit(service, account, {l1: 4_980_000, l2: 20_000}).transaction
        line = [line for line in service.store.lines_for(posted.id) if line.ledger_id == l2.id][0]
        service.store.allocation_lines[line.id] = evolve(line, ledger_balance_after_cents=0)
        clock.advance(days=18)
        deposit(service, account, {l2: 100})

        march = reconcile(service, account, 5_000_000)
        april = reconcile(service, account, 5_000_100, period_end=date(2024, 4, 30))

        assert march.trust_ledger_balance_cents == 5_000_000
        assert march.client_ledger_sum_balance_cents == 4_980_000
        assert march.structural_discrepancy_cents == 20_000
        assert not march.is_reconciled
        assert april.client_ledger_sum_balance_cents == 5_000_100
        assert april.is_reconciled

    def test_balances_as_of_period_end(self, service, account, ledgers, clock):
        """Activity after the period end does not count toward it."""
        l1, _ = ledgers
        deposit(service, account, {l1: 100_000})
        clock.advance(days=18)
        deposit(service, account, {l1: 55_000})

        record = reconcile(service, account, 100_000)

        assert record.trust_ledger_balance_cents == 100_000
        assert record.is_reconciled

    def test_void_after_period_end_keeps_original_in_period(self, service, account, ledgers, clock):
        l1, _ = ledgers
        posted = deposit(service, account, {l1: 100_000}).transaction
        clock.advance(days=18)
        service.void(posted.id, "bounced in April", PARTNER)

        march = reconcile(service, account, 100_000)
        april = reconcile(service, account, 0, period_end=date(2024, 4, 30))

        assert march.is_reconciled
        assert april.trust_ledger_balance_cents == 0
        assert april.is_reconciled

    def test_pending_withdrawals_are_not_counted(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 100_000})
        request_withdrawal(service, account, l1, 30_000)

        record = reconcile(service, account, 100_000)

        assert record.trust_ledger_balance_cents == 100_000
        assert record.is_reconciled

    def test_reconcile_is_audited(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 10_000})
        record = reconcile(service, account, 9_000)

        entries = service.audit_log(action="trust.reconcile").entries
        assert len(entries) == 1
        assert entries[0].entity_id == record.id
        assert entries[0].amount_cents == -1_000


class TestReconciliationApproval:
    """Tests for signing off a reconciliation."""

    def test_reviewer_signs_off(self, service, account, ledgers):
        l1, _ = ledgers
        deposit(service, account, {l1: 10_000})
        record = reconcile(service, account, 10_000)

        approved = service.approve_reconciliation(record.id, PARTNER)

        assert approved.approved_by == PARTNER
        assert approved.approved_at is not None

    def test_preparer_cannot_sign_off(self, service, account, ledgers):
        record = reconcile(service, account, 0)

        with pytest.raises(SelfApprovalNotAllowed):
            service.approve_reconciliation(record.id, CLERK)

    def test_approved_record_is_final(self, service, account, ledgers):
        record = reconcile(service, account, 0)
        service.approve_reconciliation(record.id, PARTNER)

        with pytest.raises(ReconciliationAlreadyApproved):
            service.approve_reconciliation(record.id, "partner-2")

    def test_unknown_record(self, service):
        with pytest.raises(ReconciliationNotFound):
            service.approve_reconciliation("missing", PARTNER)

    def test_listing_newest_period_first(self, service, account, ledgers):
        march = reconcile(service, account, 0)
        april = reconcile(service, account, 0, period_end=date(2024, 4, 30))

        assert [r.id for r in service.list_reconciliations(account.id)] == [april.id, march.id]
