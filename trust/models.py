from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


class TrustAccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CLOSED = "CLOSED"


class LedgerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    FROZEN = "FROZEN"


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    REFUND_TO_CLIENT = "REFUND_TO_CLIENT"
    FEE_EARNED = "FEE_EARNED"
    INTEREST = "INTEREST"


CREDIT_TYPES = frozenset({TransactionType.DEPOSIT, TransactionType.INTEREST, TransactionType.TRANSFER_IN})
DEPOSIT_TYPES = frozenset({TransactionType.DEPOSIT, TransactionType.INTEREST})
WITHDRAWAL_TYPES = frozenset({TransactionType.WITHDRAWAL, TransactionType.REFUND_TO_CLIENT})


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    VOIDED = "VOIDED"


class DiscrepancyKind(str, Enum):
    BANK_DIFFERENCE = "BANK_DIFFERENCE"
    STRUCTURAL_IMBALANCE = "STRUCTURAL_IMBALANCE"
    NEGATIVE_LEDGER = "NEGATIVE_LEDGER"
    STORED_BALANCE_DRIFT = "STORED_BALANCE_DRIFT"


def evolve(model: BaseModel, **changes: Any) -> BaseModel:
    """Return a re-validated copy of ``model`` with ``changes`` applied."""
    data = {name: getattr(model, name) for name in type(model).model_fields}
    data.update(changes)
    return type(model).model_validate(data)


# --- Entities ---

class TrustBankAccount(BaseModel):
    id: str
    name: str
    bank_name: str
    account_number_masked: str
    routing_number: str
    jurisdiction: str
    current_balance_cents: int = 0
    status: TrustAccountStatus = TrustAccountStatus.ACTIVE
    entity_id: Optional[str] = None
    office_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ClientTrustLedger(BaseModel):
    id: str
    trust_account_id: str
    client_id: str
    matter_id: Optional[str] = None
    balance_cents: int = Field(default=0, ge=0)
    status: LedgerStatus = LedgerStatus.ACTIVE
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    closed_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def accepts_credit(self) -> bool:
        return self.status != LedgerStatus.CLOSED

    def accepts_debit(self) -> bool:
        return self.status == LedgerStatus.ACTIVE


class PostedEntry(BaseModel):
    kind: Literal["posted"] = "posted"

    model_config = ConfigDict(frozen=True)


class ReversingEntry(BaseModel):
    kind: Literal["reversal"] = "reversal"
    original_tx_id: str

    model_config = ConfigDict(frozen=True)


TransactionEntry = Annotated[Union[PostedEntry, ReversingEntry], Field(discriminator="kind")]


class VoidInfo(BaseModel):
    voided_at: datetime
    voided_by: str
    reason: str
    reversal_tx_id: str

    model_config = ConfigDict(frozen=True)


class TrustTransaction(BaseModel):
    id: str
    trust_account_id: str
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    payor_payee: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    check_number: Optional[str] = None
    wire_reference: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    created_by: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    account_balance_before_cents: Optional[int] = None
    account_balance_after_cents: Optional[int] = None
    applied_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    counterpart_tx_id: Optional[str] = None
    invoice_ref: Optional[str] = None
    operating_reference: Optional[str] = None
    notes: Optional[str] = None
    entry: TransactionEntry = Field(default_factory=PostedEntry)
    void: Optional[VoidInfo] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @model_validator(mode="after")
    def _check_lifecycle(self) -> "TrustTransaction":
        if (self.status == TransactionStatus.VOIDED) != (self.void is not None):
            raise ValueError("void details are present exactly when the status is VOIDED")
        if self.void is not None and self.is_reversal:
            raise ValueError("a reversing entry cannot itself be voided")
        applied = self.applied_at is not None
        if applied != (self.status in (TransactionStatus.APPROVED, TransactionStatus.VOIDED)):
            raise ValueError("balances are applied exactly when the transaction is approved")
        if applied and (self.account_balance_before_cents is None or self.account_balance_after_cents is None):
            raise ValueError("applied transactions carry balance snapshots")
        return self

    @property
    def is_voided(self) -> bool:
        return self.void is not None

    @property
    def is_reversal(self) -> bool:
        return isinstance(self.entry, ReversingEntry)

    @property
    def original_tx_id(self) -> Optional[str]:
        return self.entry.original_tx_id if isinstance(self.entry, ReversingEntry) else None

    @property
    def direction(self) -> int:
        sign = 1 if self.type in CREDIT_TYPES else -1
        return -sign if self.is_reversal else sign

    @property
    def net_amount_cents(self) -> int:
        return self.direction * self.amount_cents

    def can_approve(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def can_void(self) -> bool:
        return self.status == TransactionStatus.APPROVED and not self.is_reversal


class TrustAllocationLine(BaseModel):
    id: str
    transaction_id: str
    ledger_id: str
    amount_cents: int
    description: Optional[str] = None
    ledger_balance_after_cents: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class EarnedFeeEvent(BaseModel):
    id: str
    ledger_id: str
    trust_tx_id: str
    invoice_ref: str
    amount_cents: int
    approved_by: str
    approved_at: datetime
    operating_reference: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class OutstandingItem(BaseModel):
    reference: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = None
    item_date: Optional[date] = None

    model_config = ConfigDict(frozen=True)


class ReconciliationDiscrepancy(BaseModel):
    kind: DiscrepancyKind
    amount_cents: int
    message: str
    ledger_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ReconciliationRecord(BaseModel):
    id: str
    trust_account_id: str
    period_start: Optional[date] = None
    period_end: date
    bank_statement_balance_cents: int
    trust_ledger_balance_cents: int
    client_ledger_sum_balance_cents: int
    adjusted_ledger_balance_cents: int
    bank_discrepancy_cents: int
    structural_discrepancy_cents: int
    discrepancy_amount_cents: int
    is_reconciled: bool
    outstanding_checks: list[OutstandingItem] = Field(default_factory=list)
    deposits_in_transit: list[OutstandingItem] = Field(default_factory=list)
    exceptions: list[ReconciliationDiscrepancy] = Field(default_factory=list)
    notes: Optional[str] = None
    prepared_by: str
    prepared_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def can_approve(self) -> bool:
        return self.approved_by is None


class TrustAuditLog(BaseModel):
    id: str
    actor: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    previous_state: Optional[dict[str, Any]] = None
    new_state: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    amount_cents: Optional[int] = None
    trust_account_id: Optional[str] = None
    ledger_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PeriodLock(BaseModel):
    id: str
    period_start: date
    period_end: date
    locked_by: str
    locked_at: datetime
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def covers(self, day: date) -> bool:
        return self.period_start <= day <= self.period_end


# --- Requests ---

class CreateTrustAccountRequest(BaseModel):
    name: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=4)
    routing_number: str = Field(..., min_length=1)
    jurisdiction: str = Field(..., min_length=2, max_length=2, description="State code")
    entity_id: Optional[str] = None
    office_id: Optional[str] = None


class AccountStatusRequest(BaseModel):
    status: TrustAccountStatus
    reason: Optional[str] = None


class CreateLedgerRequest(BaseModel):
    trust_account_id: str
    client_id: str = Field(..., min_length=1)
    matter_id: Optional[str] = None
    notes: Optional[str] = None


class LedgerStatusRequest(BaseModel):
    reason: Optional[str] = None


class AllocationInput(BaseModel):
    ledger_id: str
    amount_cents: int
    description: Optional[str] = None


class DepositRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicates")
    trust_account_id: str
    amount_cents: int
    payor_payee: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    check_number: Optional[str] = None
    wire_reference: Optional[str] = None
    transaction_type: TransactionType = TransactionType.DEPOSIT
    allocations: list[AllocationInput] = Field(default_factory=list)

    @field_validator("transaction_type")
    @classmethod
    def _check_type(cls, v: TransactionType) -> TransactionType:
        if v not in DEPOSIT_TYPES:
            raise ValueError(f"{v.value} is not a deposit type")
        return v

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "idempotency_key": "deposit-2024-0117-retainer",
            "trust_account_id": "f2b1c1de-5d7a-4f59-9d0e-0c1f7a8e2b11",
            "amount_cents": 1000000,
            "payor_payee": "Acme Holdings LLC",
            "description": "Retainer deposit",
            "check_number": "10442",
            "allocations": [
                {"ledger_id": "8c0e2f8e-1b0a-4c43-a7f5-0b2f4bfae001", "amount_cents": 600000},
                {"ledger_id": "8c0e2f8e-1b0a-4c43-a7f5-0b2f4bfae002", "amount_cents": 400000},
            ],
        }
    })


class WithdrawalRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicates")
    trust_account_id: str
    ledger_id: str
    amount_cents: int
    payor_payee: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    check_number: Optional[str] = None
    wire_reference: Optional[str] = None
    transaction_type: TransactionType = TransactionType.WITHDRAWAL

    @field_validator("transaction_type")
    @classmethod
    def _check_type(cls, v: TransactionType) -> TransactionType:
        if v not in WITHDRAWAL_TYPES:
            raise ValueError(f"{v.value} is not a withdrawal type")
        return v


class TransferRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicates")
    from_ledger_id: str
    to_ledger_id: str
    amount_cents: int
    payor_payee: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    wire_reference: Optional[str] = None

    @model_validator(mode="after")
    def _check_ledgers(self) -> "TransferRequest":
        if self.from_ledger_id == self.to_ledger_id:
            raise ValueError("cannot transfer a ledger to itself")
        return self


class EarnedFeeRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicates")
    ledger_id: str
    amount_cents: int
    invoice_ref: str = Field(..., min_length=1)
    operating_reference: Optional[str] = None
    approver: Optional[str] = Field(default=None, description="Approve synchronously as this actor")
    payor_payee: str = "Firm operating account"
    description: Optional[str] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    reason: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for rejection")


class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for voiding")


class ReconcileRequest(BaseModel):
    trust_account_id: str
    period_start: Optional[date] = None
    period_end: date
    bank_statement_balance_cents: int
    outstanding_checks: list[OutstandingItem] = Field(default_factory=list)
    deposits_in_transit: list[OutstandingItem] = Field(default_factory=list)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_period(self) -> "ReconcileRequest":
        if self.period_start is not None and self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


class PeriodLockRequest(BaseModel):
    period_start: date
    period_end: date
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_period(self) -> "PeriodLockRequest":
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


# --- Responses ---

class PostingResult(BaseModel):
    transaction: TrustTransaction
    counterpart: Optional[TrustTransaction] = None
    allocations: list[TrustAllocationLine]
    account_balance_cents: Optional[int] = None
    ledger_balances: dict[str, int] = Field(default_factory=dict)
    earned_fee_event: Optional[EarnedFeeEvent] = None
    message: str


class VoidResult(BaseModel):
    original: TrustTransaction
    reversal: TrustTransaction
    voided_counterpart: Optional[TrustTransaction] = None
    allocations: list[TrustAllocationLine]
    account_balance_cents: int
    ledger_balances: dict[str, int] = Field(default_factory=dict)
    message: str


class TransactionDetail(BaseModel):
    transaction: TrustTransaction
    allocations: list[TrustAllocationLine]
    reversal: Optional[TrustTransaction] = None
    earned_fee_event: Optional[EarnedFeeEvent] = None


class AuditExport(BaseModel):
    entries: list[TrustAuditLog]
    total_count: int
