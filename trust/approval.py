"""
Maker-checker approval of pending trust transactions.

PENDING -> APPROVED applies balances; PENDING -> REJECTED is terminal with no
balance effect. Approval re-checks sufficiency under the account lock, so two
withdrawals requested against the same funds can never both be approved.
"""

from datetime import datetime
from typing import Callable, Optional

from .audit import AuditRecorder, state_of
from .config import TrustSettings
from .earned_fee import build_fee_event
from .engine import ApplyPhase, TransactionEngine
from .errors import SelfApprovalNotAllowed, TransactionNotApprovable
from .logging_config import get_logger
from .models import (
    PostingResult,
    TransactionStatus,
    TransactionType,
    TrustTransaction,
    evolve,
)
from .store import ChangeSet, LedgerStore

logger = get_logger(__name__)


class ApprovalWorkflow:
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

    def _legs(self, tx: TrustTransaction) -> list[TrustTransaction]:
        if tx.counterpart_tx_id is None:
            return [tx]
        return [tx, self.store.get_transaction(tx.counterpart_tx_id)]

    def _account_ids(self, transaction_id: str) -> set[str]:
        tx = self.store.get_transaction(transaction_id)
        return {leg.trust_account_id for leg in self._legs(tx)}

    def _check_transition(self, tx: TrustTransaction, actor: str, operation: str) -> None:
        if tx.type == TransactionType.TRANSFER_IN and tx.counterpart_tx_id is not None:
            raise TransactionNotApprovable(
                tx.id, tx.status.value, operation,
                f"use the paired transfer-out {tx.counterpart_tx_id}",
            )
        if not tx.can_approve():
            raise TransactionNotApprovable(tx.id, tx.status.value, operation)
        if self.settings.dual_control and actor == tx.created_by:
            raise SelfApprovalNotAllowed(tx.id, actor)

    def approve(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> PostingResult:
        with self.store.lock_accounts(*self._account_ids(transaction_id)):
            tx = self.store.get_transaction(transaction_id)
            self._check_transition(tx, actor, "approve")
            legs = self._legs(tx)
            now = self.clock()
            self.engine.ensure_period_open(now)

            lines = {leg.id: self.store.lines_for(leg.id) for leg in legs}
            settlement = self.engine.settle(legs, lines, approved_by=actor, now=now, phase=ApplyPhase.APPROVAL)
            fee_events = [
                build_fee_event(leg, lines[leg.id][0].ledger_id, actor, now)
                for leg in settlement.transactions
                if leg.type == TransactionType.FEE_EARNED
            ]
            self.store.commit(settlement.change_set(fee_events=fee_events))

            approved = settlement.transactions[0]
            previous, new = settlement.audit_states()
            previous["transaction"] = state_of(tx)
            self.audit.record(
                actor, "trust.transaction.approve", "TrustTransaction", approved.id,
                previous_state=previous, new_state=new,
                reason=reason,
                amount_cents=approved.amount_cents,
                trust_account_id=approved.trust_account_id,
                ledger_id=lines[approved.id][0].ledger_id,
                transaction_id=approved.id,
            )

        logger.info(
            "transaction_approved",
            transaction_id=approved.id,
            type=approved.type.value,
            approved_by=actor,
            amount_cents=approved.amount_cents,
        )
        return PostingResult(
            transaction=approved,
            counterpart=settlement.transactions[1] if len(settlement.transactions) > 1 else None,
            allocations=settlement.lines,
            account_balance_cents=approved.account_balance_after_cents,
            ledger_balances=settlement.ledger_balances(),
            earned_fee_event=fee_events[0] if fee_events else None,
            message="Transaction approved",
        )

    def reject(self, transaction_id: str, actor: str, reason: str) -> PostingResult:
        with self.store.lock_accounts(*self._account_ids(transaction_id)):
            tx = self.store.get_transaction(transaction_id)
            self._check_transition(tx, actor, "reject")
            now = self.clock()
            rejected = [
                evolve(
                    leg,
                    status=TransactionStatus.REJECTED,
                    rejected_by=actor,
                    rejected_at=now,
                    rejection_reason=reason,
                )
                for leg in self._legs(tx)
            ]
            self.store.commit(ChangeSet(transactions=rejected))
            self.audit.record(
                actor, "trust.transaction.reject", "TrustTransaction", tx.id,
                previous_state=state_of(tx),
                new_state=state_of(rejected[0]),
                reason=reason,
                amount_cents=tx.amount_cents,
                trust_account_id=tx.trust_account_id,
                transaction_id=tx.id,
            )
            account_balance = self.store.get_account(tx.trust_account_id).current_balance_cents

        logger.info("transaction_rejected", transaction_id=tx.id, rejected_by=actor)
        return PostingResult(
            transaction=rejected[0],
            counterpart=rejected[1] if len(rejected) > 1 else None,
            allocations=self.store.lines_for(tx.id),
            account_balance_cents=account_balance,
            message="Transaction rejected",
        )

    def list_pending(self, account_id: Optional[str] = None) -> list[TrustTransaction]:
        pending = [
            tx for tx in self.store.list_transactions(account_id)
            if tx.status == TransactionStatus.PENDING
            and not (tx.type == TransactionType.TRANSFER_IN and tx.counterpart_tx_id)
        ]
        pending.sort(key=lambda tx: tx.created_at)
        return pending
