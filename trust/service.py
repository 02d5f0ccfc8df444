from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from .allocation import AllocationSplitter
from .approval import ApprovalWorkflow
from .audit import AuditRecorder, state_of
from .config import TrustSettings, get_settings
from .earned_fee import EarnedFeeTransfer
from .engine import TransactionEngine
from .errors import AccountNotActive, LedgerNotActive, LedgerNotEmpty
from .logging_config import get_logger
from .models import (
    AccountStatusRequest,
    AuditExport,
    ClientTrustLedger,
    CreateLedgerRequest,
    CreateTrustAccountRequest,
    DepositRequest,
    EarnedFeeRequest,
    LedgerStatus,
    PeriodLock,
    PeriodLockRequest,
    PostingResult,
    ReconcileRequest,
    ReconciliationRecord,
    TransactionDetail,
    TransferRequest,
    TrustAccountStatus,
    TrustBankAccount,
    TrustTransaction,
    VoidResult,
    WithdrawalRequest,
    evolve,
)
from .reconciliation import ReconciliationEngine
from .store import LedgerStore
from .void import VoidEngine

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def mask_account_number(account_number: str) -> str:
    return "*" * max(len(account_number) - 4, 0) + account_number[-4:]


class TrustAccountingService:
    """
    Entry point for the outer CRUD layer.

    Wires the trust components around one store and exposes the
    administrative operations (accounts, ledgers, period locks) and the
    read-only queries alongside the posting workflow.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        settings: Optional[TrustSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store or LedgerStore()
        self.settings = settings or get_settings()
        self.clock = clock or utc_now
        self.audit = AuditRecorder(self.store, self.clock)
        self.splitter = AllocationSplitter(self.store)
        self.engine = TransactionEngine(self.store, self.splitter, self.audit, self.settings, self.clock)
        self.approvals = ApprovalWorkflow(self.store, self.engine, self.audit, self.settings, self.clock)
        self.voids = VoidEngine(self.store, self.engine, self.audit, self.clock)
        self.earned_fees = EarnedFeeTransfer(self.store, self.engine, self.audit, self.settings, self.clock)
        self.reconciliation = ReconciliationEngine(self.store, self.audit, self.settings, self.clock)

    # --- accounts ---

    def create_account(self, request: CreateTrustAccountRequest, actor: str) -> TrustBankAccount:
        now = self.clock()
        account = TrustBankAccount(
            id=str(uuid4()),
            name=request.name,
            bank_name=request.bank_name,
            account_number_masked=mask_account_number(request.account_number),
            routing_number=request.routing_number,
            jurisdiction=request.jurisdiction.upper(),
            entity_id=request.entity_id,
            office_id=request.office_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put_account(account)
        self.audit.record(
            actor, "trust.account.create", "TrustBankAccount", account.id,
            new_state=state_of(account),
            trust_account_id=account.id,
        )
        logger.info("trust_account_created", trust_account_id=account.id, jurisdiction=account.jurisdiction)
        return account

    def get_account(self, account_id: str) -> TrustBankAccount:
        return self.store.get_account(account_id)

    def list_accounts(self) -> list[TrustBankAccount]:
        return sorted(self.store.list_accounts(), key=lambda account: account.created_at)

    def set_account_status(self, account_id: str, request: AccountStatusRequest, actor: str) -> TrustBankAccount:
        with self.store.lock_accounts(account_id):
            account = self.store.get_account(account_id)
            if account.status == TrustAccountStatus.CLOSED:
                raise AccountNotActive(account.id, account.status.value)
            changes = {"status": request.status, "updated_at": self.clock()}
            if request.status == TrustAccountStatus.CLOSED:
                if account.current_balance_cents != 0:
                    raise LedgerNotEmpty(f"Trust account {account.id}", account.current_balance_cents)
                changes.update(closed_at=changes["updated_at"], closed_by=actor)
            updated = evolve(account, **changes)
            self.store.put_account(updated)
            self.audit.record(
                actor, "trust.account.status", "TrustBankAccount", account.id,
                previous_state=state_of(account),
                new_state=state_of(updated),
                reason=request.reason,
                trust_account_id=account.id,
            )
        logger.info("trust_account_status_changed", trust_account_id=account.id, status=updated.status.value)
        return updated

    # --- ledgers ---

    def create_ledger(self, request: CreateLedgerRequest, actor: str) -> ClientTrustLedger:
        account = self.store.get_account(request.trust_account_id)
        if account.status == TrustAccountStatus.CLOSED:
            raise AccountNotActive(account.id, account.status.value)
        now = self.clock()
        ledger = ClientTrustLedger(
            id=str(uuid4()),
            trust_account_id=account.id,
            client_id=request.client_id,
            matter_id=request.matter_id,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        self.store.put_ledger(ledger)
        self.audit.record(
            actor, "trust.ledger.create", "ClientTrustLedger", ledger.id,
            new_state=state_of(ledger),
            trust_account_id=account.id,
            ledger_id=ledger.id,
        )
        logger.info("client_ledger_created", ledger_id=ledger.id, trust_account_id=account.id)
        return ledger

    def get_ledger(self, ledger_id: str) -> ClientTrustLedger:
        return self.store.get_ledger(ledger_id)

    def list_ledgers(self, account_id: Optional[str] = None) -> list[ClientTrustLedger]:
        return sorted(self.store.list_ledgers(account_id), key=lambda ledger: ledger.created_at)

    def _change_ledger_status(
        self, ledger_id: str, status: LedgerStatus, actor: str, reason: Optional[str], action: str
    ) -> ClientTrustLedger:
        ledger = self.store.get_ledger(ledger_id)
        with self.store.lock_accounts(ledger.trust_account_id):
            ledger = self.store.get_ledger(ledger_id)
            if ledger.status == LedgerStatus.CLOSED:
                raise LedgerNotActive(ledger.id, ledger.status.value, action)
            now = self.clock()
            changes = {"status": status, "updated_at": now}
            if status == LedgerStatus.CLOSED:
                if ledger.balance_cents != 0:
                    raise LedgerNotEmpty(f"Ledger {ledger.id}", ledger.balance_cents)
                changes.update(closed_at=now, closed_by=actor, closed_reason=reason)
            updated = evolve(ledger, **changes)
            self.store.put_ledger(updated)
            self.audit.record(
                actor, f"trust.ledger.{action}", "ClientTrustLedger", ledger.id,
                previous_state=state_of(ledger),
                new_state=state_of(updated),
                reason=reason,
                trust_account_id=ledger.trust_account_id,
                ledger_id=ledger.id,
            )
        logger.info("client_ledger_status_changed", ledger_id=ledger.id, status=status.value)
        return updated

    def freeze_ledger(self, ledger_id: str, actor: str, reason: Optional[str] = None) -> ClientTrustLedger:
        return self._change_ledger_status(ledger_id, LedgerStatus.FROZEN, actor, reason, "freeze")

    def unfreeze_ledger(self, ledger_id: str, actor: str, reason: Optional[str] = None) -> ClientTrustLedger:
        return self._change_ledger_status(ledger_id, LedgerStatus.ACTIVE, actor, reason, "unfreeze")

    def close_ledger(self, ledger_id: str, actor: str, reason: Optional[str] = None) -> ClientTrustLedger:
        return self._change_ledger_status(ledger_id, LedgerStatus.CLOSED, actor, reason, "close")

    # --- postings ---

    def deposit(self, request: DepositRequest, actor: str) -> PostingResult:
        return self.engine.post_deposit(request, actor)

    def withdraw(self, request: WithdrawalRequest, actor: str) -> PostingResult:
        return self.engine.post_withdrawal(request, actor)

    def transfer(self, request: TransferRequest, actor: str) -> PostingResult:
        return self.engine.post_transfer(request, actor)

    def recognize_earned_fee(self, request: EarnedFeeRequest, actor: str) -> PostingResult:
        return self.earned_fees.recognize_earned_fee(request, actor)

    def approve(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> PostingResult:
        return self.approvals.approve(transaction_id, actor, reason)

    def reject(self, transaction_id: str, actor: str, reason: str) -> PostingResult:
        return self.approvals.reject(transaction_id, actor, reason)

    def void(self, transaction_id: str, reason: str, actor: str) -> VoidResult:
        return self.voids.void(transaction_id, reason, actor)

    # --- reconciliation ---

    def reconcile(self, request: ReconcileRequest, actor: str) -> ReconciliationRecord:
        return self.reconciliation.reconcile(request, actor)

    def approve_reconciliation(self, record_id: str, actor: str) -> ReconciliationRecord:
        return self.reconciliation.approve(record_id, actor)

    def list_reconciliations(self, account_id: Optional[str] = None) -> list[ReconciliationRecord]:
        return self.reconciliation.list_reconciliations(account_id)

    # --- period locks ---

    def lock_period(self, request: PeriodLockRequest, actor: str) -> PeriodLock:
        now = self.clock()
        lock = PeriodLock(
            id=str(uuid4()),
            period_start=request.period_start,
            period_end=request.period_end,
            locked_by=actor,
            locked_at=now,
            notes=request.notes,
        )
        self.store.put_period_lock(lock)
        self.audit.record(actor, "trust.period.lock", "PeriodLock", lock.id, new_state=state_of(lock))
        logger.info(
            "period_locked",
            period_start=lock.period_start.isoformat(),
            period_end=lock.period_end.isoformat(),
        )
        return lock

    def list_period_locks(self) -> list[PeriodLock]:
        return self.store.list_period_locks()

    # --- queries ---

    def list_transactions(self, account_id: Optional[str] = None, limit: Optional[int] = None) -> list[TrustTransaction]:
        transactions = self.store.list_transactions(account_id)
        transactions.sort(key=lambda tx: tx.created_at, reverse=True)
        return transactions[:self.settings.clamp_limit(limit)]

    def list_pending(self, account_id: Optional[str] = None) -> list[TrustTransaction]:
        return self.approvals.list_pending(account_id)

    def get_transaction(self, transaction_id: str) -> TransactionDetail:
        tx = self.store.get_transaction(transaction_id)
        return TransactionDetail(
            transaction=tx,
            allocations=self.store.lines_for(tx.id),
            reversal=self.store.reversal_of(tx.id),
            earned_fee_event=self.store.fee_event_for(tx.id),
        )

    def audit_log(
        self,
        account_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> AuditExport:
        entries = self.audit.export(trust_account_id=account_id, transaction_id=transaction_id, action=action)
        page = entries[offset:offset + self.settings.clamp_limit(limit)]
        return AuditExport(entries=page, total_count=len(entries))
