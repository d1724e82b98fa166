"""
AuditRecorder -- append-only audit trail keyed by invoice.

Responsibility:
    Writes exactly one ``AuditEntry`` per mutating action and serves the
    two read paths: the trail of one invoice (visibility-checked) and the
    global recent feed (VIEW_AUDIT_LOGS only).

Architecture position:
    Kernel > Services -- imperative shell over ``SqlAlchemyStore``.  Called
    by the orchestrator for writes, by an outer API layer for reads.

Invariants enforced:
    - Append-only: no update or delete path exists here, and the ORM
      listeners in ``db/immutability.py`` reject one if attempted.
    - Write-once ownership: ``record`` is invoked inside the orchestrator's
      transaction, after the invoice write has flushed.
    - Reads are newest first.

Failure modes:
    - ForbiddenError if the actor may not see the invoice or the feed.
    - InvoiceNotFoundError on a trail request for an unknown invoice.
    - PersistenceFailureError from the store on a failed append.
"""

from __future__ import annotations

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import effective_actor
from approval_kernel.domain.dtos import AuditEntry, InvoiceStatus, UserRecord
from approval_kernel.domain.permissions import ActionKind, PermissionEvaluator
from approval_kernel.exceptions import ForbiddenError, InvoiceNotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.services.store import SqlAlchemyStore

logger = get_logger("services.audit_recorder")

RECENT_AUDIT_LIMIT = 100


class AuditRecorder:
    """
    Contract:
        One ``record`` call == one audit row, flushed in the caller's
        transaction.

    Non-goals:
        - Does NOT commit.
    """

    def __init__(
        self,
        store: SqlAlchemyStore,
        evaluator: PermissionEvaluator | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._evaluator = evaluator or PermissionEvaluator()
        self._clock = clock or SystemClock()

    def record(
        self,
        *,
        invoice_id: str,
        actor: UserRecord,
        action: str,
        details: str = "",
        status: InvoiceStatus | None = None,
    ) -> AuditEntry:
        entry = self._store.append_audit(AuditEntry(
            invoice_id=invoice_id,
            username=actor.display_name,
            action=action,
            details=details,
            timestamp=self._clock.now(),
            actor_id=actor.id,
            status=status.value if status is not None else None,
        ))
        logger.info(
            "audit_entry_recorded",
            extra={
                "invoice_id": invoice_id,
                "audit_action": action,
                "actor_id": actor.id,
                "status": entry.status,
            },
        )
        return entry

    def trail(self, actor: UserRecord, invoice_id: str) -> list[AuditEntry]:
        """Audit entries for one invoice, newest first."""
        invoice = self._store.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        scoped = effective_actor(
            actor,
            self._store.find_delegators(actor.id),
            self._clock.now(),
            self._evaluator.normalizer,
        )
        if not self._evaluator.can_view_invoice(scoped, invoice):
            raise ForbiddenError(
                actor_id=actor.id,
                action=ActionKind.VIEW_AUDIT_LOGS.value,
                reason="invoice is outside the actor's visibility",
                resource_id=invoice_id,
            )
        return self._store.audit_for_invoice(invoice_id)

    def recent(
        self, actor: UserRecord, limit: int = RECENT_AUDIT_LIMIT,
    ) -> list[AuditEntry]:
        """The global feed, newest first."""
        self._evaluator.authorize(actor, ActionKind.VIEW_AUDIT_LOGS)
        return self._store.recent_audit(limit=limit)
