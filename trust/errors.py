"""
Trust accounting errors.

Every error carries a machine-readable ``code`` and the structured values a
reviewer needs (ledger/account ids, balances, shortfalls) in ``data``.
Validation errors are raised before anything is written.
"""

from typing import Any, Optional


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, minor = divmod(abs(cents), 100)
    return f"{sign}${whole:,}.{minor:02d}"


class TrustError(Exception):
    code = "TRUST_ERROR"

    def __init__(self, message: str, **data: Any):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "data": self.data}


class NotFound(TrustError):
    code = "NOT_FOUND"


class AccountNotFound(NotFound):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Trust account {account_id} not found", account_id=account_id)


class LedgerNotFound(NotFound):
    code = "LEDGER_NOT_FOUND"

    def __init__(self, ledger_id: str):
        super().__init__(f"Client ledger {ledger_id} not found", ledger_id=ledger_id)


class TransactionNotFound(NotFound):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found", transaction_id=transaction_id)


class ReconciliationNotFound(NotFound):
    code = "RECONCILIATION_NOT_FOUND"

    def __init__(self, record_id: str):
        super().__init__(f"Reconciliation {record_id} not found", record_id=record_id)


class InvalidAmount(TrustError):
    code = "INVALID_AMOUNT"

    def __init__(
        self,
        amount_cents: int,
        context: str = "amount",
        account_id: Optional[str] = None,
        ledger_id: Optional[str] = None,
    ):
        where = ""
        if ledger_id is not None:
            where = f" on ledger {ledger_id}"
        elif account_id is not None:
            where = f" on account {account_id}"
        super().__init__(
            f"{context}{where} must be positive, got {format_cents(amount_cents)}",
            amount_cents=amount_cents,
            account_id=account_id,
            ledger_id=ledger_id,
        )


class InsufficientFunds(TrustError):
    code = "INSUFFICIENT_FUNDS"
    phase = "request"

    def __init__(self, ledger_id: str, balance_cents: int, requested_cents: int):
        shortfall = requested_cents - balance_cents
        super().__init__(
            f"Ledger {ledger_id} holds {format_cents(balance_cents)}, "
            f"cannot debit {format_cents(requested_cents)} "
            f"(short {format_cents(shortfall)}) at {self.phase}",
            ledger_id=ledger_id,
            balance_cents=balance_cents,
            requested_cents=requested_cents,
            shortfall_cents=shortfall,
        )


class InsufficientFundsAtApproval(InsufficientFunds):
    code = "INSUFFICIENT_FUNDS_AT_APPROVAL"
    phase = "approval"


class LedgerNotActive(TrustError):
    code = "LEDGER_NOT_ACTIVE"

    def __init__(self, ledger_id: str, status: str, operation: str):
        super().__init__(
            f"Ledger {ledger_id} is {status} and cannot accept a {operation}",
            ledger_id=ledger_id,
            status=status,
            operation=operation,
        )


class AccountNotActive(TrustError):
    code = "ACCOUNT_NOT_ACTIVE"

    def __init__(self, account_id: str, status: str):
        super().__init__(
            f"Trust account {account_id} is {status}",
            account_id=account_id,
            status=status,
        )


class AllocationMismatch(TrustError):
    code = "ALLOCATION_MISMATCH"

    def __init__(self, account_id: str, expected_cents: int, allocated_cents: int):
        difference = expected_cents - allocated_cents
        super().__init__(
            f"Allocations on account {account_id} total {format_cents(allocated_cents)} "
            f"but the transaction is {format_cents(expected_cents)} "
            f"(difference {format_cents(difference)})",
            account_id=account_id,
            expected_cents=expected_cents,
            allocated_cents=allocated_cents,
            difference_cents=difference,
        )


class CrossAccountAllocation(TrustError):
    code = "CROSS_ACCOUNT_ALLOCATION"

    def __init__(self, ledger_id: str, ledger_account_id: str, expected_account_id: str):
        super().__init__(
            f"Ledger {ledger_id} belongs to trust account {ledger_account_id}, "
            f"not {expected_account_id}",
            ledger_id=ledger_id,
            ledger_account_id=ledger_account_id,
            expected_account_id=expected_account_id,
        )


class AlreadyVoided(TrustError):
    code = "ALREADY_VOIDED"

    def __init__(self, transaction_id: str, reversal_tx_id: str):
        super().__init__(
            f"Transaction {transaction_id} was already voided by {reversal_tx_id}",
            transaction_id=transaction_id,
            reversal_tx_id=reversal_tx_id,
        )


class TransactionNotApprovable(TrustError):
    code = "TRANSACTION_NOT_APPROVABLE"

    def __init__(self, transaction_id: str, status: str, operation: str, detail: str = ""):
        message = f"Cannot {operation} transaction {transaction_id} in {status} state"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, transaction_id=transaction_id, status=status, operation=operation)


class SelfApprovalNotAllowed(TrustError):
    code = "SELF_APPROVAL_NOT_ALLOWED"

    def __init__(self, entity_id: str, actor: str):
        super().__init__(
            f"{actor} created {entity_id} and cannot also approve or reject it",
            entity_id=entity_id,
            actor=actor,
        )


class DuplicateSubmission(TrustError):
    code = "DUPLICATE_SUBMISSION"

    def __init__(self, idempotency_key: str, existing_tx_id: str):
        super().__init__(
            f"Idempotency key {idempotency_key!r} was already used by transaction {existing_tx_id}",
            idempotency_key=idempotency_key,
            existing_tx_id=existing_tx_id,
        )


class PeriodLocked(TrustError):
    code = "PERIOD_LOCKED"

    def __init__(self, posting_date: str, lock_id: str, period_start: str, period_end: str):
        super().__init__(
            f"Posting date {posting_date} falls in locked period {period_start}..{period_end}",
            posting_date=posting_date,
            lock_id=lock_id,
            period_start=period_start,
            period_end=period_end,
        )


class LedgerNotEmpty(TrustError):
    code = "LEDGER_NOT_EMPTY"

    def __init__(self, entity_id: str, balance_cents: int):
        super().__init__(
            f"{entity_id} still holds {format_cents(balance_cents)} and cannot be closed",
            entity_id=entity_id,
            balance_cents=balance_cents,
        )


class ReconciliationAlreadyApproved(TrustError):
    code = "RECONCILIATION_ALREADY_APPROVED"

    def __init__(self, record_id: str, approved_by: Optional[str]):
        super().__init__(
            f"Reconciliation {record_id} was already approved by {approved_by}",
            record_id=record_id,
            approved_by=approved_by,
        )


class LedgerInvariantViolation(TrustError):
    """Raised when a computed posting would break the account/ledger balance identity."""

    code = "LEDGER_INVARIANT_VIOLATION"

    def __init__(self, account_id: str, account_balance_cents: int, ledger_sum_cents: int):
        super().__init__(
            f"Account {account_id} balance {format_cents(account_balance_cents)} "
            f"does not equal its ledger total {format_cents(ledger_sum_cents)}",
            account_id=account_id,
            account_balance_cents=account_balance_cents,
            ledger_sum_cents=ledger_sum_cents,
        )
