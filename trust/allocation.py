from datetime import datetime
from uuid import uuid4

from .errors import AllocationMismatch, CrossAccountAllocation, InvalidAmount
from .models import AllocationInput, TrustAllocationLine
from .store import LedgerStore


class AllocationSplitter:
    """
    Turns caller-supplied allocation inputs into allocation lines.

    Lines must all point at ledgers of the transaction's trust account and
    sum exactly, in integer cents, to the transaction's signed account effect.
    The resulting lines carry no balance-after value until they are applied.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def split(
        self,
        trust_account_id: str,
        transaction_id: str,
        net_amount_cents: int,
        allocations: list[AllocationInput],
        created_at: datetime,
    ) -> list[TrustAllocationLine]:
        if not allocations:
            raise AllocationMismatch(trust_account_id, net_amount_cents, 0)

        direction = 1 if net_amount_cents > 0 else -1
        lines = []
        for allocation in allocations:
            ledger = self.store.get_ledger(allocation.ledger_id)
            if ledger.trust_account_id != trust_account_id:
                raise CrossAccountAllocation(ledger.id, ledger.trust_account_id, trust_account_id)
            if allocation.amount_cents * direction <= 0:
                raise InvalidAmount(
                    allocation.amount_cents * direction, "Allocation",
                    account_id=trust_account_id, ledger_id=ledger.id,
                )
            lines.append(TrustAllocationLine(
                id=str(uuid4()),
                transaction_id=transaction_id,
                ledger_id=ledger.id,
                amount_cents=allocation.amount_cents,
                description=allocation.description,
                created_at=created_at,
            ))

        allocated = sum(line.amount_cents for line in lines)
        if allocated != net_amount_cents:
            raise AllocationMismatch(trust_account_id, net_amount_cents, allocated)
        return lines
