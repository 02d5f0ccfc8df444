"""
TransactionEngine: posting of deposits, withdrawals and transfers.

Deposits apply their balances immediately. Withdrawals and transfers are
stored as PENDING with their allocation lines but never touch a balance until
ApprovalWorkflow approves them; ``settle`` is the only place balances change
and it is always called with the affected account locks held.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from .allocation import AllocationSplitter
from .audit import AuditRecorder, state_of
from .config import TrustSettings
from .errors import (
    AccountNotActive,
    AllocationMismatch,
    CrossAccountAllocation,
    DuplicateSubmission,
    InsufficientFunds,
    InsufficientFundsAtApproval,
    InvalidAmount,
    LedgerNotActive,
    PeriodLocked,
)
from .logging_config import get_logger
from .models import (
    ClientTrustLedger,
    DepositRequest,
    EarnedFeeEvent,
    LedgerStatus,
    PostingResult,
    TransactionStatus,
    TransactionType,
    TransferRequest,
    TrustAccountStatus,
    TrustAllocationLine,
    TrustBankAccount,
    TrustTransaction,
    WithdrawalRequest,
    evolve,
)
from .store import ChangeSet, LedgerStore

logger = get_logger(__name__)


class ApplyPhase(str, Enum):
    POSTING = "posting"
    APPROVAL = "approval"
    CORRECTION = "correction"


@dataclass
class Settlement:
    transactions: list[TrustTransaction]
    lines: list[TrustAllocationLine]
    accounts: dict[str, TrustBankAccount]
    ledgers: dict[str, ClientTrustLedger]
    balances_before: dict[str, int] = field(default_factory=dict)

    def change_set(
        self,
        extra_transactions: Optional[list[TrustTransaction]] = None,
        fee_events: Optional[list[EarnedFeeEvent]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChangeSet:
        return ChangeSet(
            accounts=list(self.accounts.values()),
            ledgers=list(self.ledgers.values()),
            transactions=self.transactions + list(extra_transactions or []),
            lines=self.lines,
            fee_events=list(fee_events or []),
            idempotency_key=idempotency_key,
        )

    def ledger_balances(self) -> dict[str, int]:
        return {ledger_id: ledger.balance_cents for ledger_id, ledger in self.ledgers.items()}

    def audit_states(self) -> tuple[dict, dict]:
        previous = {
            "accounts": {account_id: self.balances_before[account_id] for account_id in self.accounts},
            "ledgers": {ledger_id: self.balances_before[ledger_id] for ledger_id in self.ledgers},
        }
        new = {
            "accounts": {account_id: account.current_balance_cents for account_id, account in self.accounts.items()},
            "ledgers": self.ledger_balances(),
            "transactions": [state_of(tx) for tx in self.transactions],
        }
        return previous, new


class TransactionEngine:
    def __init__(
        self,
        store: LedgerStore,
        splitter: AllocationSplitter,
        audit: AuditRecorder,
        settings: TrustSettings,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.splitter = splitter
        self.audit = audit
        self.settings = settings
        self.clock = clock

    # --- guards ---

    def ensure_not_duplicate(self, idempotency_key: Optional[str]) -> None:
        existing = self.store.transaction_for_key(idempotency_key)
        if existing is not None:
            raise DuplicateSubmission(idempotency_key, existing)

    def ensure_period_open(self, when: datetime) -> None:
        lock = self.store.find_period_lock(when.date())
        if lock is not None:
            raise PeriodLocked(
                when.date().isoformat(), lock.id,
                lock.period_start.isoformat(), lock.period_end.isoformat(),
            )

    def require_active_account(self, account_id: str) -> TrustBankAccount:
        account = self.store.get_account(account_id)
        if account.status != TrustAccountStatus.ACTIVE:
            raise AccountNotActive(account.id, account.status.value)
        return account

    def check_debit(self, ledger: ClientTrustLedger, amount_cents: int) -> None:
        if not ledger.accepts_debit():
            raise LedgerNotActive(ledger.id, ledger.status.value, "debit")
        if ledger.balance_cents < amount_cents:
            raise InsufficientFunds(ledger.id, ledger.balance_cents, amount_cents)

    # --- balance application ---

    def settle(
        self,
        transactions: list[TrustTransaction],
        lines_by_tx: dict[str, list[TrustAllocationLine]],
        approved_by: str,
        now: datetime,
        phase: ApplyPhase = ApplyPhase.POSTING,
    ) -> Settlement:
        """
        Compute the approved, applied versions of ``transactions``.

        Works on scratch copies: nothing is written until the caller commits
        the returned settlement. Caller must hold the locks of every account
        the transactions touch.
        """
        accounts: dict[str, TrustBankAccount] = {}
        ledgers: dict[str, ClientTrustLedger] = {}
        before: dict[str, int] = {}
        settled_txs = []
        settled_lines = []

        for tx in transactions:
            account = accounts.get(tx.trust_account_id)
            if account is None:
                if phase == ApplyPhase.CORRECTION:
                    # an inactive account still takes reversals, a closed one takes nothing
                    account = self.store.get_account(tx.trust_account_id)
                    if account.status == TrustAccountStatus.CLOSED:
                        raise AccountNotActive(account.id, account.status.value)
                else:
                    account = self.require_active_account(tx.trust_account_id)
            before.setdefault(account.id, account.current_balance_cents)
            lines = lines_by_tx.get(tx.id, [])
            allocated = sum(line.amount_cents for line in lines)
            if not lines or allocated != tx.net_amount_cents:
                raise AllocationMismatch(account.id, tx.net_amount_cents, allocated)

            for line in lines:
                ledger = ledgers.get(line.ledger_id)
                if ledger is None:
                    ledger = self.store.get_ledger(line.ledger_id)
                before.setdefault(ledger.id, ledger.balance_cents)
                if ledger.trust_account_id != tx.trust_account_id:
                    raise CrossAccountAllocation(ledger.id, ledger.trust_account_id, tx.trust_account_id)
                if line.amount_cents > 0 and not ledger.accepts_credit():
                    raise LedgerNotActive(ledger.id, ledger.status.value, "credit")
                if line.amount_cents < 0:
                    # corrections may debit a frozen ledger, nothing may debit a closed one
                    if phase == ApplyPhase.CORRECTION:
                        if ledger.status == LedgerStatus.CLOSED:
                            raise LedgerNotActive(ledger.id, ledger.status.value, "debit")
                    elif not ledger.accepts_debit():
                        raise LedgerNotActive(ledger.id, ledger.status.value, "debit")

                new_balance = ledger.balance_cents + line.amount_cents
                if new_balance < 0:
                    error = InsufficientFundsAtApproval if phase == ApplyPhase.APPROVAL else InsufficientFunds
                    raise error(ledger.id, ledger.balance_cents, -line.amount_cents)
                ledgers[ledger.id] = evolve(ledger, balance_cents=new_balance, updated_at=now)
                settled_lines.append(evolve(line, ledger_balance_after_cents=new_balance))

            balance_before = account.current_balance_cents
            balance_after = balance_before + tx.net_amount_cents
            accounts[account.id] = evolve(account, current_balance_cents=balance_after, updated_at=now)
            settled_txs.append(evolve(
                tx,
                status=TransactionStatus.APPROVED,
                approved_by=approved_by,
                approved_at=now,
                applied_at=now,
                account_balance_before_cents=balance_before,
                account_balance_after_cents=balance_after,
            ))

        return Settlement(
            transactions=settled_txs,
            lines=settled_lines,
            accounts=accounts,
            ledgers=ledgers,
            balances_before=before,
        )

    def draft_debit(
        self,
        account_id: str,
        ledger_id: str,
        tx_type: TransactionType,
        amount_cents: int,
        payor_payee: str,
        description: str,
        actor: str,
        now: datetime,
        **fields,
    ) -> tuple[TrustTransaction, TrustAllocationLine, ClientTrustLedger]:
        """Validate and build a PENDING single-ledger debit. Caller holds the account lock."""
        self.require_active_account(account_id)
        ledger = self.store.get_ledger(ledger_id)
        if ledger.trust_account_id != account_id:
            raise CrossAccountAllocation(ledger.id, ledger.trust_account_id, account_id)
        self.check_debit(ledger, amount_cents)

        tx = TrustTransaction(
            id=str(uuid4()),
            trust_account_id=account_id,
            type=tx_type,
            amount_cents=amount_cents,
            payor_payee=payor_payee,
            description=description,
            created_by=actor,
            created_at=now,
            **fields,
        )
        line = TrustAllocationLine(
            id=str(uuid4()),
            transaction_id=tx.id,
            ledger_id=ledger.id,
            amount_cents=-amount_cents,
            description=description,
            created_at=now,
        )
        return tx, line, ledger

    # --- postings ---

    def post_deposit(self, request: DepositRequest, actor: str) -> PostingResult:
        if request.amount_cents <= 0:
            raise InvalidAmount(request.amount_cents, "Deposit amount", account_id=request.trust_account_id)
        self.store.get_account(request.trust_account_id)
        self.ensure_not_duplicate(request.idempotency_key)

        now = self.clock()
        draft = TrustTransaction(
            id=str(uuid4()),
            trust_account_id=request.trust_account_id,
            type=request.transaction_type,
            amount_cents=request.amount_cents,
            payor_payee=request.payor_payee,
            description=request.description,
            check_number=request.check_number,
            wire_reference=request.wire_reference,
            created_by=actor,
            idempotency_key=request.idempotency_key,
            created_at=now,
        )
        lines = self.splitter.split(
            request.trust_account_id, draft.id, draft.net_amount_cents, request.allocations, now
        )

        with self.store.lock_accounts(request.trust_account_id):
            self.ensure_not_duplicate(request.idempotency_key)
            self.ensure_period_open(now)
            settlement = self.settle([draft], {draft.id: lines}, approved_by=actor, now=now)
            self.store.commit(settlement.change_set(idempotency_key=request.idempotency_key))
            tx = settlement.transactions[0]
            previous, new = settlement.audit_states()
            self.audit.record(
                actor, "trust.deposit", "TrustTransaction", tx.id,
                previous_state=previous, new_state=new,
                amount_cents=tx.amount_cents,
                trust_account_id=tx.trust_account_id,
                transaction_id=tx.id,
            )

        logger.info(
            "deposit_posted",
            transaction_id=tx.id,
            trust_account_id=tx.trust_account_id,
            amount_cents=tx.amount_cents,
            allocations=len(settlement.lines),
        )
        return PostingResult(
            transaction=tx,
            allocations=settlement.lines,
            account_balance_cents=tx.account_balance_after_cents,
            ledger_balances=settlement.ledger_balances(),
            message="Deposit posted",
        )

    def post_withdrawal(self, request: WithdrawalRequest, actor: str) -> PostingResult:
        if request.amount_cents <= 0:
            raise InvalidAmount(
                request.amount_cents, "Withdrawal amount",
                account_id=request.trust_account_id, ledger_id=request.ledger_id,
            )
        self.store.get_account(request.trust_account_id)
        self.ensure_not_duplicate(request.idempotency_key)

        now = self.clock()
        with self.store.lock_accounts(request.trust_account_id):
            self.ensure_not_duplicate(request.idempotency_key)
            self.ensure_period_open(now)
            tx, line, ledger = self.draft_debit(
                request.trust_account_id,
                request.ledger_id,
                request.transaction_type,
                request.amount_cents,
                request.payor_payee,
                request.description,
                actor,
                now,
                check_number=request.check_number,
                wire_reference=request.wire_reference,
                idempotency_key=request.idempotency_key,
            )
            self.store.commit(ChangeSet(transactions=[tx], lines=[line], idempotency_key=request.idempotency_key))
            self.audit.record(
                actor, "trust.withdrawal.request", "TrustTransaction", tx.id,
                new_state=state_of(tx),
                amount_cents=tx.amount_cents,
                trust_account_id=tx.trust_account_id,
                ledger_id=ledger.id,
                transaction_id=tx.id,
            )
            account_balance = self.store.get_account(request.trust_account_id).current_balance_cents

        logger.info(
            "withdrawal_requested",
            transaction_id=tx.id,
            ledger_id=ledger.id,
            amount_cents=tx.amount_cents,
        )
        return PostingResult(
            transaction=tx,
            allocations=[line],
            account_balance_cents=account_balance,
            ledger_balances={ledger.id: ledger.balance_cents},
            message="Withdrawal pending approval",
        )

    def post_transfer(self, request: TransferRequest, actor: str) -> PostingResult:
        if request.amount_cents <= 0:
            raise InvalidAmount(request.amount_cents, "Transfer amount", ledger_id=request.from_ledger_id)
        source = self.store.get_ledger(request.from_ledger_id)
        target = self.store.get_ledger(request.to_ledger_id)
        # money moving between trust accounts is a withdrawal from one and a deposit to the other
        if target.trust_account_id != source.trust_account_id:
            raise CrossAccountAllocation(target.id, target.trust_account_id, source.trust_account_id)
        self.ensure_not_duplicate(request.idempotency_key)

        now = self.clock()
        with self.store.lock_accounts(source.trust_account_id):
            self.ensure_not_duplicate(request.idempotency_key)
            self.ensure_period_open(now)
            self.require_active_account(target.trust_account_id)
            target = self.store.get_ledger(target.id)
            if not target.accepts_credit():
                raise LedgerNotActive(target.id, target.status.value, "credit")

            in_id = str(uuid4())
            out_tx, out_line, source = self.draft_debit(
                source.trust_account_id,
                source.id,
                TransactionType.TRANSFER_OUT,
                request.amount_cents,
                request.payor_payee,
                request.description,
                actor,
                now,
                wire_reference=request.wire_reference,
                idempotency_key=request.idempotency_key,
                counterpart_tx_id=in_id,
            )
            in_tx = TrustTransaction(
                id=in_id,
                trust_account_id=target.trust_account_id,
                type=TransactionType.TRANSFER_IN,
                amount_cents=request.amount_cents,
                payor_payee=request.payor_payee,
                description=request.description,
                wire_reference=request.wire_reference,
                created_by=actor,
                counterpart_tx_id=out_tx.id,
                created_at=now,
            )
            in_line = TrustAllocationLine(
                id=str(uuid4()),
                transaction_id=in_tx.id,
                ledger_id=target.id,
                amount_cents=request.amount_cents,
                description=request.description,
                created_at=now,
            )
            self.store.commit(ChangeSet(
                transactions=[out_tx, in_tx],
                lines=[out_line, in_line],
                idempotency_key=request.idempotency_key,
            ))
            self.audit.record(
                actor, "trust.transfer.request", "TrustTransaction", out_tx.id,
                new_state={"transfer_out": state_of(out_tx), "transfer_in": state_of(in_tx)},
                amount_cents=out_tx.amount_cents,
                trust_account_id=out_tx.trust_account_id,
                ledger_id=source.id,
                transaction_id=out_tx.id,
            )

        logger.info(
            "transfer_requested",
            transaction_id=out_tx.id,
            counterpart_tx_id=in_tx.id,
            from_ledger_id=source.id,
            to_ledger_id=target.id,
            amount_cents=out_tx.amount_cents,
        )
        return PostingResult(
            transaction=out_tx,
            counterpart=in_tx,
            allocations=[out_line, in_line],
            ledger_balances={source.id: source.balance_cents, target.id: target.balance_cents},
            message="Transfer pending approval",
        )
