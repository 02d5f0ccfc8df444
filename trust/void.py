"""
VoidEngine: corrections by reversing entry.

Voiding posts a new transaction whose allocation lines mirror the original's
with opposite sign, applies it immediately, and marks the original VOIDED.
The original row keeps every posted field; only its void details are added.
"""

from datetime import datetime
from typing import Callable
from uuid import uuid4

from .audit import AuditRecorder, state_of
from .engine import ApplyPhase, TransactionEngine
from .errors import AlreadyVoided, TransactionNotApprovable
from .logging_config import get_logger
from .models import (
    ReversingEntry,
    TransactionStatus,
    TrustAllocationLine,
    TrustTransaction,
    VoidInfo,
    VoidResult,
    evolve,
)
from .store import LedgerStore

logger = get_logger(__name__)


class VoidEngine:
    def __init__(
        self,
        store: LedgerStore,
        engine: TransactionEngine,
        audit: AuditRecorder,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.engine = engine
        self.audit = audit
        self.clock = clock

    def _legs(self, tx: TrustTransaction) -> list[TrustTransaction]:
        if tx.counterpart_tx_id is None:
            return [tx]
        return [tx, self.store.get_transaction(tx.counterpart_tx_id)]

    def _check_voidable(self, tx: TrustTransaction) -> None:
        if tx.void is not None:
            raise AlreadyVoided(tx.id, tx.void.reversal_tx_id)
        if tx.is_reversal:
            raise TransactionNotApprovable(
                tx.id, tx.status.value, "void", f"it reverses {tx.original_tx_id}"
            )
        if not tx.can_void():
            raise TransactionNotApprovable(tx.id, tx.status.value, "void")

    def void(self, transaction_id: str, reason: str, actor: str) -> VoidResult:
        tx = self.store.get_transaction(transaction_id)
        account_ids = {leg.trust_account_id for leg in self._legs(tx)}

        with self.store.lock_accounts(*account_ids):
            tx = self.store.get_transaction(transaction_id)
            self._check_voidable(tx)
            legs = self._legs(tx)
            for leg in legs[1:]:
                self._check_voidable(leg)
            now = self.clock()
            self.engine.ensure_period_open(now)

            reversal_ids = {leg.id: str(uuid4()) for leg in legs}
            reversals = []
            lines_by_tx = {}
            for leg in legs:
                reversal_id = reversal_ids[leg.id]
                reversals.append(TrustTransaction(
                    id=reversal_id,
                    trust_account_id=leg.trust_account_id,
                    type=leg.type,
                    amount_cents=leg.amount_cents,
                    payor_payee=leg.payor_payee,
                    description=f"Void of {leg.id}: {reason}",
                    check_number=leg.check_number,
                    wire_reference=leg.wire_reference,
                    created_by=actor,
                    counterpart_tx_id=reversal_ids.get(leg.counterpart_tx_id) if leg.counterpart_tx_id else None,
                    invoice_ref=leg.invoice_ref,
                    entry=ReversingEntry(original_tx_id=leg.id),
                    created_at=now,
                ))
                lines_by_tx[reversal_id] = [
                    TrustAllocationLine(
                        id=str(uuid4()),
                        transaction_id=reversal_id,
                        ledger_id=line.ledger_id,
                        amount_cents=-line.amount_cents,
                        description=f"Reversal of allocation {line.id}",
                        created_at=now,
                    )
                    for line in self.store.lines_for(leg.id)
                ]

            settlement = self.engine.settle(
                reversals, lines_by_tx, approved_by=actor, now=now, phase=ApplyPhase.CORRECTION
            )
            voided = [
                evolve(
                    leg,
                    status=TransactionStatus.VOIDED,
                    void=VoidInfo(
                        voided_at=now,
                        voided_by=actor,
                        reason=reason,
                        reversal_tx_id=reversal_ids[leg.id],
                    ),
                )
                for leg in legs
            ]
            self.store.commit(settlement.change_set(extra_transactions=voided))

            reversal = settlement.transactions[0]
            previous, new = settlement.audit_states()
            previous["transaction"] = state_of(tx)
            new["voided"] = state_of(voided[0])
            self.audit.record(
                actor, "trust.transaction.void", "TrustTransaction", tx.id,
                previous_state=previous, new_state=new,
                reason=reason,
                amount_cents=tx.amount_cents,
                trust_account_id=tx.trust_account_id,
                transaction_id=tx.id,
            )

        logger.info(
            "transaction_voided",
            transaction_id=tx.id,
            reversal_tx_id=reversal.id,
            voided_by=actor,
            amount_cents=tx.amount_cents,
        )
        return VoidResult(
            original=voided[0],
            reversal=reversal,
            voided_counterpart=voided[1] if len(voided) > 1 else None,
            allocations=settlement.lines,
            account_balance_cents=reversal.account_balance_after_cents,
            ledger_balances=settlement.ledger_balances(),
            message="Transaction voided",
        )
