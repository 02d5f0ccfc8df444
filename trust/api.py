from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import DuplicateSubmission, NotFound, SelfApprovalNotAllowed, TrustError
from .logging_config import configure_logging, get_logger
from .models import (
    AccountStatusRequest,
    ApproveRequest,
    AuditExport,
    ClientTrustLedger,
    CreateLedgerRequest,
    CreateTrustAccountRequest,
    DepositRequest,
    EarnedFeeRequest,
    LedgerStatusRequest,
    PeriodLock,
    PeriodLockRequest,
    PostingResult,
    ReconcileRequest,
    ReconciliationRecord,
    RejectRequest,
    TransactionDetail,
    TransferRequest,
    TrustBankAccount,
    TrustTransaction,
    VoidRequest,
    VoidResult,
    WithdrawalRequest,
)
from .service import TrustAccountingService

settings = get_settings()
configure_logging(settings.log_level, settings.log_json)
logger = get_logger(__name__)

app = FastAPI(
    title="Trust Accounting API",
    description="IOLTA client trust ledgers with maker-checker approval, reversing voids and three-way reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

trust_service = TrustAccountingService(settings=settings)


def get_service() -> TrustAccountingService:
    return trust_service


def get_actor(x_actor_id: str = Header(..., alias="X-Actor-Id", min_length=1)) -> str:
    return x_actor_id


def to_http_error(e: TrustError) -> HTTPException:
    if isinstance(e, NotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, DuplicateSubmission):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(e, SelfApprovalNotAllowed):
        status_code = status.HTTP_403_FORBIDDEN
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    logger.warning("request_rejected", code=e.code, status_code=status_code, error=e.message)
    return HTTPException(status_code=status_code, detail=e.to_dict())


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "trust-accounting"}


# --- accounts ---

@app.post("/trust/accounts", response_model=TrustBankAccount, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def create_account(
    request: CreateTrustAccountRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> TrustBankAccount:
    return service.create_account(request, actor)


@app.get("/trust/accounts", response_model=list[TrustBankAccount], tags=["Accounts"])
def list_accounts(service: TrustAccountingService = Depends(get_service)) -> list[TrustBankAccount]:
    return service.list_accounts()


@app.get("/trust/accounts/{account_id}", response_model=TrustBankAccount, tags=["Accounts"])
def get_account(account_id: str, service: TrustAccountingService = Depends(get_service)) -> TrustBankAccount:
    try:
        return service.get_account(account_id)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/accounts/{account_id}/status", response_model=TrustBankAccount, tags=["Accounts"])
def set_account_status(
    account_id: str,
    request: AccountStatusRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> TrustBankAccount:
    try:
        return service.set_account_status(account_id, request, actor)
    except TrustError as e:
        raise to_http_error(e)


# --- ledgers ---

@app.post("/trust/ledgers", response_model=ClientTrustLedger, status_code=status.HTTP_201_CREATED, tags=["Ledgers"])
def create_ledger(
    request: CreateLedgerRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ClientTrustLedger:
    try:
        return service.create_ledger(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.get("/trust/ledgers", response_model=list[ClientTrustLedger], tags=["Ledgers"])
def list_ledgers(
    account_id: Optional[str] = None,
    service: TrustAccountingService = Depends(get_service),
) -> list[ClientTrustLedger]:
    return service.list_ledgers(account_id)


@app.get("/trust/ledgers/{ledger_id}", response_model=ClientTrustLedger, tags=["Ledgers"])
def get_ledger(ledger_id: str, service: TrustAccountingService = Depends(get_service)) -> ClientTrustLedger:
    try:
        return service.get_ledger(ledger_id)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/ledgers/{ledger_id}/freeze", response_model=ClientTrustLedger, tags=["Ledgers"])
def freeze_ledger(
    ledger_id: str,
    request: LedgerStatusRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ClientTrustLedger:
    try:
        return service.freeze_ledger(ledger_id, actor, request.reason)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/ledgers/{ledger_id}/unfreeze", response_model=ClientTrustLedger, tags=["Ledgers"])
def unfreeze_ledger(
    ledger_id: str,
    request: LedgerStatusRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ClientTrustLedger:
    try:
        return service.unfreeze_ledger(ledger_id, actor, request.reason)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/ledgers/{ledger_id}/close", response_model=ClientTrustLedger, tags=["Ledgers"])
def close_ledger(
    ledger_id: str,
    request: LedgerStatusRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ClientTrustLedger:
    try:
        return service.close_ledger(ledger_id, actor, request.reason)
    except TrustError as e:
        raise to_http_error(e)


# --- postings ---

@app.post("/trust/deposit", response_model=PostingResult, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def deposit(
    request: DepositRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.deposit(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/withdrawal", response_model=PostingResult, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def withdraw(
    request: WithdrawalRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.withdraw(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/transfer", response_model=PostingResult, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def transfer(
    request: TransferRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.transfer(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/earned-fees", response_model=PostingResult, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def recognize_earned_fee(
    request: EarnedFeeRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.recognize_earned_fee(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.get("/trust/transactions", response_model=list[TrustTransaction], tags=["Transactions"])
def list_transactions(
    account_id: Optional[str] = None,
    limit: Optional[int] = None,
    pending_only: bool = False,
    service: TrustAccountingService = Depends(get_service),
) -> list[TrustTransaction]:
    if pending_only:
        return service.list_pending(account_id)
    return service.list_transactions(account_id, limit)


@app.get("/trust/transactions/{transaction_id}", response_model=TransactionDetail, tags=["Transactions"])
def get_transaction(
    transaction_id: str, service: TrustAccountingService = Depends(get_service)
) -> TransactionDetail:
    try:
        return service.get_transaction(transaction_id)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/transactions/{transaction_id}/approve", response_model=PostingResult, tags=["Workflow"])
def approve_transaction(
    transaction_id: str,
    request: ApproveRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.approve(transaction_id, actor, request.reason)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/transactions/{transaction_id}/reject", response_model=PostingResult, tags=["Workflow"])
def reject_transaction(
    transaction_id: str,
    request: RejectRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PostingResult:
    try:
        return service.reject(transaction_id, actor, request.reason)
    except TrustError as e:
        raise to_http_error(e)


@app.post("/trust/transactions/{transaction_id}/void", response_model=VoidResult, tags=["Workflow"])
def void_transaction(
    transaction_id: str,
    request: VoidRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> VoidResult:
    try:
        return service.void(transaction_id, request.reason, actor)
    except TrustError as e:
        raise to_http_error(e)


# --- reconciliation ---

@app.post("/trust/reconciliations", response_model=ReconciliationRecord, status_code=status.HTTP_201_CREATED, tags=["Reconciliation"])
def reconcile(
    request: ReconcileRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ReconciliationRecord:
    try:
        return service.reconcile(request, actor)
    except TrustError as e:
        raise to_http_error(e)


@app.get("/trust/reconciliations", response_model=list[ReconciliationRecord], tags=["Reconciliation"])
def list_reconciliations(
    account_id: Optional[str] = None,
    service: TrustAccountingService = Depends(get_service),
) -> list[ReconciliationRecord]:
    return service.list_reconciliations(account_id)


@app.post("/trust/reconciliations/{record_id}/approve", response_model=ReconciliationRecord, tags=["Reconciliation"])
def approve_reconciliation(
    record_id: str,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> ReconciliationRecord:
    try:
        return service.approve_reconciliation(record_id, actor)
    except TrustError as e:
        raise to_http_error(e)


# --- period locks and audit ---

@app.post("/trust/period-locks", response_model=PeriodLock, status_code=status.HTTP_201_CREATED, tags=["Compliance"])
def lock_period(
    request: PeriodLockRequest,
    actor: str = Depends(get_actor),
    service: TrustAccountingService = Depends(get_service),
) -> PeriodLock:
    return service.lock_period(request, actor)


@app.get("/trust/period-locks", response_model=list[PeriodLock], tags=["Compliance"])
def list_period_locks(service: TrustAccountingService = Depends(get_service)) -> list[PeriodLock]:
    return service.list_period_locks()


@app.get("/trust/audit", response_model=AuditExport, tags=["Compliance"])
def export_audit_log(
    account_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    service: TrustAccountingService = Depends(get_service),
) -> AuditExport:
    return service.audit_log(account_id, transaction_id, action, limit, offset)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
