"""
Three-way reconciliation.

Compares, as of a period end, the bank statement balance (adjusted for
outstanding checks and deposits in transit), the trust account's own running
balance, and the sum of its client ledgers' running balances. The two book
figures are maintained separately: the account side comes from the account's
balance snapshots, the ledger side from each ledger's balance-after on its
allocation lines. Both are also checked against the applied history.

A record is persisted whatever the outcome; a failed reconciliation is a
business fact for a reviewer, not an error.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Callable, Optional
from uuid import uuid4

from .audit import AuditRecorder, state_of
from .config import TrustSettings
from .errors import ReconciliationAlreadyApproved, SelfApprovalNotAllowed, format_cents
from .logging_config import get_logger
from .models import (
    DiscrepancyKind,
    ReconcileRequest,
    ReconciliationDiscrepancy,
    ReconciliationRecord,
    evolve,
)
from .store import AccountSnapshot, LedgerStore

logger = get_logger(__name__)


def period_cutoff(period_end: date) -> datetime:
    return datetime.combine(period_end, time.max, tzinfo=timezone.utc)


@dataclass
class PeriodBalances:
    trust_balance: int
    ledger_balances: dict[str, int]
    history_total: int = 0
    history_by_ledger: dict[str, int] = field(default_factory=dict)

    @property
    def client_sum(self) -> int:
        return sum(self.ledger_balances.values())


def balances_as_of(snapshot: AccountSnapshot, cutoff: datetime) -> PeriodBalances:
    """
    Book balances of an account as they stood at ``cutoff``.

    When nothing was applied after the cutoff the stored running balances are
    used as they are; otherwise the last snapshot at or before the cutoff.
    """
    covers_all = True
    trust_balance = 0
    ledger_balances: dict[str, int] = {}
    history_total = 0
    history_by_ledger: dict[str, int] = defaultdict(int)

    for tx in snapshot.applied:
        if tx.applied_at > cutoff:
            covers_all = False
            continue
        trust_balance = tx.account_balance_after_cents
        history_total += tx.net_amount_cents
        for line in snapshot.lines.get(tx.id, []):
            history_by_ledger[line.ledger_id] += line.amount_cents
            if line.ledger_balance_after_cents is not None:
                ledger_balances[line.ledger_id] = line.ledger_balance_after_cents

    if covers_all:
        trust_balance = snapshot.account.current_balance_cents
        ledger_balances = {ledger.id: ledger.balance_cents for ledger in snapshot.ledgers}
    else:
        for ledger in snapshot.ledgers:
            ledger_balances.setdefault(ledger.id, 0)

    return PeriodBalances(
        trust_balance=trust_balance,
        ledger_balances=ledger_balances,
        history_total=history_total,
        history_by_ledger=dict(history_by_ledger),
    )


def drift_findings(account_id: str, balances: PeriodBalances) -> list[ReconciliationDiscrepancy]:
    findings = []
    if balances.trust_balance != balances.history_total:
        findings.append(ReconciliationDiscrepancy(
            kind=DiscrepancyKind.STORED_BALANCE_DRIFT,
            amount_cents=balances.trust_balance - balances.history_total,
            message=(
                f"Account {account_id} carries {format_cents(balances.trust_balance)} "
                f"but its history sums to {format_cents(balances.history_total)}"
            ),
        ))
    ledger_ids = sorted(set(balances.ledger_balances) | set(balances.history_by_ledger))
    for ledger_id in ledger_ids:
        carried = balances.ledger_balances.get(ledger_id, 0)
        expected = balances.history_by_ledger.get(ledger_id, 0)
        if carried != expected:
            findings.append(ReconciliationDiscrepancy(
                kind=DiscrepancyKind.STORED_BALANCE_DRIFT,
                amount_cents=carried - expected,
                message=(
                    f"Ledger {ledger_id} carries {format_cents(carried)} "
                    f"but its allocations sum to {format_cents(expected)}"
                ),
                ledger_id=ledger_id,
            ))
    return findings


class ReconciliationEngine:
    def __init__(
        self,
        store: LedgerStore,
        audit: AuditRecorder,
        settings: TrustSettings,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def reconcile(self, request: ReconcileRequest, actor: str) -> ReconciliationRecord:
        snapshot = self.store.snapshot(request.trust_account_id)
        balances = balances_as_of(snapshot, period_cutoff(request.period_end))
        trust_balance = balances.trust_balance
        client_sum = balances.client_sum

        in_transit = sum(item.amount_cents for item in request.deposits_in_transit)
        outstanding = sum(item.amount_cents for item in request.outstanding_checks)
        adjusted = trust_balance + in_transit - outstanding
        bank_discrepancy = request.bank_statement_balance_cents - adjusted
        structural = trust_balance - client_sum

        exceptions = []
        if bank_discrepancy:
            exceptions.append(ReconciliationDiscrepancy(
                kind=DiscrepancyKind.BANK_DIFFERENCE,
                amount_cents=bank_discrepancy,
                message=(
                    f"Bank statement {format_cents(request.bank_statement_balance_cents)} vs "
                    f"adjusted ledger {format_cents(adjusted)}"
                ),
            ))
        if structural:
            exceptions.append(ReconciliationDiscrepancy(
                kind=DiscrepancyKind.STRUCTURAL_IMBALANCE,
                amount_cents=structural,
                message=(
                    f"Trust ledger {format_cents(trust_balance)} vs "
                    f"client ledgers {format_cents(client_sum)}"
                ),
            ))
        for ledger_id, balance in sorted(balances.ledger_balances.items()):
            if balance < 0:
                exceptions.append(ReconciliationDiscrepancy(
                    kind=DiscrepancyKind.NEGATIVE_LEDGER,
                    amount_cents=balance,
                    message=f"Ledger {ledger_id} is negative at {format_cents(balance)}",
                    ledger_id=ledger_id,
                ))
        exceptions.extend(drift_findings(snapshot.account.id, balances))

        now = self.clock()
        record = ReconciliationRecord(
            id=str(uuid4()),
            trust_account_id=request.trust_account_id,
            period_start=request.period_start,
            period_end=request.period_end,
            bank_statement_balance_cents=request.bank_statement_balance_cents,
            trust_ledger_balance_cents=trust_balance,
            client_ledger_sum_balance_cents=client_sum,
            adjusted_ledger_balance_cents=adjusted,
            bank_discrepancy_cents=bank_discrepancy,
            structural_discrepancy_cents=structural,
            discrepancy_amount_cents=bank_discrepancy or structural,
            is_reconciled=not exceptions,
            outstanding_checks=request.outstanding_checks,
            deposits_in_transit=request.deposits_in_transit,
            exceptions=exceptions,
            notes=request.notes,
            prepared_by=actor,
            prepared_at=now,
            created_at=now,
        )
        self.store.put_reconciliation(record)
        self.audit.record(
            actor, "trust.reconcile", "ReconciliationRecord", record.id,
            new_state=state_of(record),
            amount_cents=record.discrepancy_amount_cents,
            trust_account_id=record.trust_account_id,
        )

        log = logger.info if record.is_reconciled else logger.warning
        log(
            "reconciliation_completed",
            record_id=record.id,
            trust_account_id=record.trust_account_id,
            period_end=record.period_end.isoformat(),
            is_reconciled=record.is_reconciled,
            discrepancy_cents=record.discrepancy_amount_cents,
            exceptions=len(exceptions),
        )
        return record

    def approve(self, record_id: str, actor: str) -> ReconciliationRecord:
        record = self.store.get_reconciliation(record_id)
        with self.store.lock_accounts(record.trust_account_id):
            record = self.store.get_reconciliation(record_id)
            if not record.can_approve():
                raise ReconciliationAlreadyApproved(record.id, record.approved_by)
            if self.settings.dual_control and actor == record.prepared_by:
                raise SelfApprovalNotAllowed(record.id, actor)
            approved = evolve(record, approved_by=actor, approved_at=self.clock())
            self.store.put_reconciliation(approved)
            self.audit.record(
                actor, "trust.reconcile.approve", "ReconciliationRecord", record.id,
                previous_state=state_of(record),
                new_state=state_of(approved),
                trust_account_id=record.trust_account_id,
            )

        logger.info("reconciliation_approved", record_id=record.id, approved_by=actor)
        return approved

    def list_reconciliations(self, account_id: Optional[str] = None) -> list[ReconciliationRecord]:
        records = self.store.list_reconciliations(account_id)
        records.sort(key=lambda record: (record.period_end, record.created_at), reverse=True)
        return records
