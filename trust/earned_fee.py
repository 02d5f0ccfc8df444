"""
Earned fee recognition: the only sanctioned path by which trust funds become
firm revenue.

A FEE_EARNED debit is drafted against the client ledger. When an approver is
supplied the debit is approved on the spot; otherwise it waits in the
approval queue and its EarnedFeeEvent is created when it is approved.
"""

from datetime import datetime
from typing import Callable
from uuid import uuid4

from .audit import AuditRecorder, state_of
from .config import TrustSettings
from .engine import ApplyPhase, TransactionEngine
from .errors import InvalidAmount, SelfApprovalNotAllowed
from .logging_config import get_logger
from .models import (
    EarnedFeeEvent,
    EarnedFeeRequest,
    PostingResult,
    TransactionType,
    TrustTransaction,
)
from .store import ChangeSet, LedgerStore

logger = get_logger(__name__)


def build_fee_event(tx: TrustTransaction, ledger_id: str, approver: str, now: datetime) -> EarnedFeeEvent:
    return EarnedFeeEvent(
        id=str(uuid4()),
        ledger_id=ledger_id,
        trust_tx_id=tx.id,
        invoice_ref=tx.invoice_ref,
        amount_cents=tx.amount_cents,
        approved_by=approver,
        approved_at=now,
        operating_reference=tx.operating_reference,
        notes=tx.notes,
        created_at=now,
    )


class EarnedFeeTransfer:
    def __init__(
        self,
        store: LedgerStore,
        engine: TransactionEngine,
        audit: AuditRecorder,
        settings: TrustSettings,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.engine = engine
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def recognize_earned_fee(self, request: EarnedFeeRequest, actor: str) -> PostingResult:
        if request.amount_cents <= 0:
            raise InvalidAmount(request.amount_cents, "Earned fee amount", ledger_id=request.ledger_id)
        ledger = self.store.get_ledger(request.ledger_id)
        if request.approver and self.settings.dual_control and request.approver == actor:
            raise SelfApprovalNotAllowed(f"earned fee for invoice {request.invoice_ref}", actor)
        self.engine.ensure_not_duplicate(request.idempotency_key)

        now = self.clock()
        account_id = ledger.trust_account_id
        with self.store.lock_accounts(account_id):
            self.engine.ensure_not_duplicate(request.idempotency_key)
            self.engine.ensure_period_open(now)
            tx, line, ledger = self.engine.draft_debit(
                account_id,
                ledger.id,
                TransactionType.FEE_EARNED,
                request.amount_cents,
                request.payor_payee,
                request.description or f"Earned fee for invoice {request.invoice_ref}",
                actor,
                now,
                idempotency_key=request.idempotency_key,
                invoice_ref=request.invoice_ref,
                operating_reference=request.operating_reference,
                notes=request.notes,
            )

            event = None
            if request.approver:
                settlement = self.engine.settle(
                    [tx], {tx.id: [line]}, approved_by=request.approver, now=now, phase=ApplyPhase.POSTING
                )
                tx, line = settlement.transactions[0], settlement.lines[0]
                event = build_fee_event(tx, ledger.id, request.approver, now)
                self.store.commit(settlement.change_set(
                    fee_events=[event], idempotency_key=request.idempotency_key
                ))
                account_balance = settlement.accounts[account_id].current_balance_cents
                ledger_balances = settlement.ledger_balances()
            else:
                self.store.commit(ChangeSet(
                    transactions=[tx], lines=[line], idempotency_key=request.idempotency_key
                ))
                account_balance = self.store.get_account(account_id).current_balance_cents
                ledger_balances = {ledger.id: ledger.balance_cents}

            self.audit.record(
                actor, "trust.earned_fee", "TrustTransaction", tx.id,
                new_state={"transaction": state_of(tx), "earned_fee_event": state_of(event)},
                reason=f"invoice {request.invoice_ref}",
                amount_cents=tx.amount_cents,
                trust_account_id=account_id,
                ledger_id=ledger.id,
                transaction_id=tx.id,
            )

        logger.info(
            "earned_fee_recognized",
            transaction_id=tx.id,
            ledger_id=ledger.id,
            invoice_ref=request.invoice_ref,
            amount_cents=tx.amount_cents,
            approved=event is not None,
        )
        return PostingResult(
            transaction=tx,
            allocations=[line],
            account_balance_cents=account_balance,
            ledger_balances=ledger_balances,
            earned_fee_event=event,
            message="Earned fee recognized" if event else "Earned fee pending approval",
        )
