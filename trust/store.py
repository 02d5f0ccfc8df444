"""
LedgerStore: durable entities of the trust core.

The in-memory store keeps each entity kind in its own arena keyed by id, with
allocation lines indexed by transaction id. Rows are immutable pydantic
models; a write replaces the row. ``commit`` writes a whole posting (accounts,
ledgers, transactions, lines, fee events and the idempotency key) in one
critical section so readers never observe half a posting. ``posting_order``
records, per account, the order in which transactions had their balances
applied; reconciliation reads balances as of a date from it.

Balance-mutating callers serialize per trust account with ``lock_accounts``.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Iterator, Optional

from .errors import (
    AccountNotFound,
    DuplicateSubmission,
    LedgerInvariantViolation,
    LedgerNotFound,
    ReconciliationNotFound,
    TransactionNotFound,
)
from .models import (
    ClientTrustLedger,
    EarnedFeeEvent,
    PeriodLock,
    ReconciliationRecord,
    TrustAllocationLine,
    TrustAuditLog,
    TrustBankAccount,
    TrustTransaction,
)


@dataclass
class AccountSnapshot:
    account: TrustBankAccount
    ledgers: list[ClientTrustLedger]
    transactions: list[TrustTransaction]
    lines: dict[str, list[TrustAllocationLine]]
    applied: list[TrustTransaction] = field(default_factory=list)


@dataclass
class ChangeSet:
    accounts: list[TrustBankAccount] = field(default_factory=list)
    ledgers: list[ClientTrustLedger] = field(default_factory=list)
    transactions: list[TrustTransaction] = field(default_factory=list)
    lines: list[TrustAllocationLine] = field(default_factory=list)
    fee_events: list[EarnedFeeEvent] = field(default_factory=list)
    idempotency_key: Optional[str] = None


def check_balanced(account: TrustBankAccount, ledgers: Iterable[ClientTrustLedger]) -> None:
    ledger_sum = sum(ledger.balance_cents for ledger in ledgers)
    if account.current_balance_cents != ledger_sum:
        raise LedgerInvariantViolation(account.id, account.current_balance_cents, ledger_sum)


class LedgerStore:
    def __init__(self):
        self.accounts: dict[str, TrustBankAccount] = {}
        self.ledgers: dict[str, ClientTrustLedger] = {}
        self.transactions: dict[str, TrustTransaction] = {}
        self.allocation_lines: dict[str, TrustAllocationLine] = {}
        self.lines_by_transaction: dict[str, list[str]] = defaultdict(list)
        self.earned_fee_events: dict[str, EarnedFeeEvent] = {}
        self.fee_event_by_transaction: dict[str, str] = {}
        self.reconciliations: dict[str, ReconciliationRecord] = {}
        self.period_locks: dict[str, PeriodLock] = {}
        self.audit_log: list[TrustAuditLog] = []
        self.idempotency_index: dict[str, str] = {}
        self.posting_order: dict[str, list[str]] = defaultdict(list)
        self._registry_lock = threading.RLock()
        self._account_locks: dict[str, threading.RLock] = {}

    # --- locking ---

    @contextmanager
    def lock_accounts(self, *account_ids: str) -> Iterator[None]:
        """Hold the mutation lock of every given account, acquired in sorted order."""
        with self._registry_lock:
            locks = [
                self._account_locks.setdefault(account_id, threading.RLock())
                for account_id in sorted(set(account_ids))
            ]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # --- reads ---

    def get_account(self, account_id: str) -> TrustBankAccount:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def get_ledger(self, ledger_id: str) -> ClientTrustLedger:
        ledger = self.ledgers.get(ledger_id)
        if ledger is None:
            raise LedgerNotFound(ledger_id)
        return ledger

    def get_transaction(self, transaction_id: str) -> TrustTransaction:
        tx = self.transactions.get(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        return tx

    def get_reconciliation(self, record_id: str) -> ReconciliationRecord:
        record = self.reconciliations.get(record_id)
        if record is None:
            raise ReconciliationNotFound(record_id)
        return record

    def list_accounts(self) -> list[TrustBankAccount]:
        with self._registry_lock:
            return list(self.accounts.values())

    def list_ledgers(self, account_id: Optional[str] = None) -> list[ClientTrustLedger]:
        with self._registry_lock:
            return [
                ledger for ledger in self.ledgers.values()
                if account_id is None or ledger.trust_account_id == account_id
            ]

    def list_transactions(self, account_id: Optional[str] = None) -> list[TrustTransaction]:
        with self._registry_lock:
            return [
                tx for tx in self.transactions.values()
                if account_id is None or tx.trust_account_id == account_id
            ]

    def lines_for(self, transaction_id: str) -> list[TrustAllocationLine]:
        with self._registry_lock:
            return [self.allocation_lines[line_id] for line_id in self.lines_by_transaction.get(transaction_id, [])]

    def fee_event_for(self, transaction_id: str) -> Optional[EarnedFeeEvent]:
        event_id = self.fee_event_by_transaction.get(transaction_id)
        return self.earned_fee_events.get(event_id) if event_id else None

    def reversal_of(self, transaction_id: str) -> Optional[TrustTransaction]:
        tx = self.get_transaction(transaction_id)
        return self.transactions.get(tx.void.reversal_tx_id) if tx.void else None

    def list_reconciliations(self, account_id: Optional[str] = None) -> list[ReconciliationRecord]:
        with self._registry_lock:
            return [
                record for record in self.reconciliations.values()
                if account_id is None or record.trust_account_id == account_id
            ]

    def find_period_lock(self, day: date) -> Optional[PeriodLock]:
        with self._registry_lock:
            for lock in self.period_locks.values():
                if lock.covers(day):
                    return lock
        return None

    def list_period_locks(self) -> list[PeriodLock]:
        with self._registry_lock:
            return sorted(self.period_locks.values(), key=lambda lock: lock.period_start)

    def transaction_for_key(self, idempotency_key: Optional[str]) -> Optional[str]:
        if idempotency_key is None:
            return None
        return self.idempotency_index.get(idempotency_key)

    def snapshot(self, account_id: str) -> AccountSnapshot:
        """Point-in-time copy of an account's history. Does not take the account lock."""
        with self._registry_lock:
            account = self.get_account(account_id)
            ledgers = [ledger for ledger in self.ledgers.values() if ledger.trust_account_id == account_id]
            transactions = [tx for tx in self.transactions.values() if tx.trust_account_id == account_id]
            lines = {
                tx.id: [self.allocation_lines[line_id] for line_id in self.lines_by_transaction.get(tx.id, [])]
                for tx in transactions
            }
            applied = [self.transactions[tx_id] for tx_id in self.posting_order.get(account_id, [])]
        return AccountSnapshot(
            account=account, ledgers=ledgers, transactions=transactions, lines=lines, applied=applied
        )

    # --- writes ---

    def put_account(self, account: TrustBankAccount) -> None:
        with self._registry_lock:
            self.accounts[account.id] = account

    def put_ledger(self, ledger: ClientTrustLedger) -> None:
        with self._registry_lock:
            self.ledgers[ledger.id] = ledger

    def put_reconciliation(self, record: ReconciliationRecord) -> None:
        with self._registry_lock:
            self.reconciliations[record.id] = record

    def put_period_lock(self, lock: PeriodLock) -> None:
        with self._registry_lock:
            self.period_locks[lock.id] = lock

    def append_audit(self, entry: TrustAuditLog) -> None:
        with self._registry_lock:
            self.audit_log.append(entry)

    def commit(self, changes: ChangeSet) -> None:
        with self._registry_lock:
            key = changes.idempotency_key
            if key is not None and key in self.idempotency_index:
                raise DuplicateSubmission(key, self.idempotency_index[key])

            touched = {account.id: account for account in changes.accounts}
            if touched:
                staged = dict(self.ledgers)
                staged.update({ledger.id: ledger for ledger in changes.ledgers})
                for account in touched.values():
                    check_balanced(account, (ledger for ledger in staged.values() if ledger.trust_account_id == account.id))

            for account in changes.accounts:
                self.accounts[account.id] = account
            for ledger in changes.ledgers:
                self.ledgers[ledger.id] = ledger
            for tx in changes.transactions:
                previous = self.transactions.get(tx.id)
                if tx.applied_at is not None and (previous is None or previous.applied_at is None):
                    self.posting_order[tx.trust_account_id].append(tx.id)
                self.transactions[tx.id] = tx
            for line in changes.lines:
                if line.id not in self.allocation_lines:
                    self.lines_by_transaction[line.transaction_id].append(line.id)
                self.allocation_lines[line.id] = line
            for event in changes.fee_events:
                self.earned_fee_events[event.id] = event
                self.fee_event_by_transaction[event.trust_tx_id] = event.id
            if key is not None and changes.transactions:
                self.idempotency_index[key] = changes.transactions[0].id
