"""
IOLTA Trust Accounting Core

This package provides:
- Per-client trust ledgers under pooled trust bank accounts
- Deposits split across client ledgers in exact integer cents
- Maker-checker approval for every outflow: pending → approved / rejected
- Voids by reversing entry, never by deletion
- Earned fee recognition with an EarnedFeeEvent trail
- Three-way reconciliation against the bank statement
- Append-only audit log of every state change
"""

from .models import (
    TrustAccountStatus,
    LedgerStatus,
    TransactionType,
    TransactionStatus,
    TrustBankAccount,
    ClientTrustLedger,
    TrustTransaction,
    TrustAllocationLine,
    EarnedFeeEvent,
    ReconciliationRecord,
    TrustAuditLog,
)
from .service import TrustAccountingService
from .store import LedgerStore

__all__ = [
    "TrustAccountStatus",
    "LedgerStatus",
    "TransactionType",
    "TransactionStatus",
    "TrustBankAccount",
    "ClientTrustLedger",
    "TrustTransaction",
    "TrustAllocationLine",
    "EarnedFeeEvent",
    "ReconciliationRecord",
    "TrustAuditLog",
    "TrustAccountingService",
    "LedgerStore",
]
