"""
Audit trail for the trust core.

Every state-changing call appends one immutable TrustAuditLog row holding the
actor, the action, the entity touched and its before/after state. Rows are
never updated or removed here; the trail is exposed read-only for compliance
export.
"""

from datetime import datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from .logging_config import get_logger
from .models import TrustAuditLog
from .store import LedgerStore

logger = get_logger(__name__)


def state_of(model: Any) -> Optional[dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(mode="json")


class AuditRecorder:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime]):
        self.store = store
        self.clock = clock

    def record(
        self,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        previous_state: Optional[dict[str, Any]] = None,
        new_state: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
        amount_cents: Optional[int] = None,
        trust_account_id: Optional[str] = None,
        ledger_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> TrustAuditLog:
        entry = TrustAuditLog(
            id=str(uuid4()),
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            reason=reason,
            amount_cents=amount_cents,
            trust_account_id=trust_account_id,
            ledger_id=ledger_id,
            transaction_id=transaction_id,
            created_at=self.clock(),
        )
        self.store.append_audit(entry)
        logger.info(
            "audit_recorded",
            action=action,
            actor=actor,
            entity_type=entity_type,
            entity_id=entity_id,
            trust_account_id=trust_account_id,
        )
        return entry

    def export(
        self,
        trust_account_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[TrustAuditLog]:
        entries = list(self.store.audit_log)
        if trust_account_id is not None:
            entries = [entry for entry in entries if entry.trust_account_id == trust_account_id]
        if transaction_id is not None:
            entries = [entry for entry in entries if entry.transaction_id == transaction_id]
        if action is not None:
            entries = [entry for entry in entries if entry.action == action]
        if since is not None:
            entries = [entry for entry in entries if entry.created_at >= since]
        return entries
