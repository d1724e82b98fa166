"""
SqlAlchemyStore -- the persistence surface of the approval pipeline.

Responsibility:
    Implements the ``Store`` port over one SQLAlchemy session: invoice
    reads (plain and row-locked), partial-merge upserts, audit appends,
    message creation, user lookups and updates, and the read queries the
    recorder, directory and reminder job need.

Architecture position:
    Kernel > Services -- imperative shell.  Returns domain DTOs only; ORM
    instances never leave this module.

Invariants enforced:
    - Flush, never commit: the caller's ``session_scope`` owns the
      transaction, so an invoice write, its message and its audit entry
      commit or roll back together.
    - ``upsert`` merges only the supplied fields.
    - Every ``SQLAlchemyError`` on a write surfaces as
      ``PersistenceFailureError``.

Failure modes:
    - PersistenceFailureError on any database error during a write.
    - ValueError when ``upsert`` creates an invoice without a status.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.dtos import (
    ApprovalRecord,
    AuditEntry,
    InvoiceRecord,
    InvoiceStatus,
    Message,
    UserRecord,
)
from approval_kernel.exceptions import PersistenceFailureError, UserNotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_entry import AuditEntryModel
from approval_kernel.models.invoice import InvoiceModel
from approval_kernel.models.message import MessageModel
from approval_kernel.models.notification import NotificationLogModel
from approval_kernel.models.user import UserModel

logger = get_logger("services.store")


class SqlAlchemyStore:
    """
    Store port over a caller-owned session.

    Non-goals:
        - Does NOT call ``session.commit()`` or ``session.rollback()``.
        - Does NOT authorize anything.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session

    def _flush(self, operation: str, entity_id: str | None) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "store_write_failed",
                extra={"operation": operation, "entity_id": entity_id},
                exc_info=True,
            )
            raise PersistenceFailureError(operation, entity_id, str(exc)) from exc

    # -- invoices ----------------------------------------------------------

    def get(self, invoice_id: str) -> InvoiceRecord | None:
        model = self._session.get(InvoiceModel, invoice_id)
        return model.to_dto() if model is not None else None

    def get_for_update(self, invoice_id: str) -> InvoiceRecord | None:
        """Load with ``SELECT ... FOR UPDATE`` (a no-op lock on SQLite)."""
        model = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def upsert(self, invoice_id: str, fields: Mapping[str, Any]) -> InvoiceRecord:
        """Merge ``fields`` into the invoice, creating it when absent."""
        model = self._session.get(InvoiceModel, invoice_id)
        if model is None:
            if "status" not in fields:
                raise ValueError(f"New invoice {invoice_id} requires a status")
            pending = ApprovalRecord.pending().to_dict()
            model = InvoiceModel(
                id=invoice_id,
                status=InvoiceStatus(fields["status"]).value,
                pm_approval=pending,
                admin_approval=pending,
                hil_review=pending,
            )
            self._session.add(model)
        model.apply_fields(fields)
        self._flush("upsert_invoice", invoice_id)
        return model.to_dto()

    def list_invoices_by_status(
        self, statuses: Iterable[InvoiceStatus], limit: int | None = None,
    ) -> list[InvoiceRecord]:
        stmt = (
            select(InvoiceModel)
            .where(InvoiceModel.status.in_([s.value for s in statuses]))
            .order_by(InvoiceModel.created_at, InvoiceModel.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    # -- audit -------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        last_seq = self._session.execute(
            select(func.max(AuditEntryModel.seq))
            .where(AuditEntryModel.invoice_id == entry.invoice_id)
        ).scalar_one_or_none()
        model = AuditEntryModel.from_dto(entry, seq=(last_seq or 0) + 1)
        self._session.add(model)
        self._flush("append_audit", entry.invoice_id)
        return model.to_dto()

    def audit_for_invoice(self, invoice_id: str) -> list[AuditEntry]:
        """Newest first."""
        rows = self._session.execute(
            select(AuditEntryModel)
            .where(AuditEntryModel.invoice_id == invoice_id)
            .order_by(AuditEntryModel.timestamp.desc(), AuditEntryModel.seq.desc())
        ).scalars()
        return [r.to_dto() for r in rows]

    def recent_audit(self, limit: int = 100) -> list[AuditEntry]:
        """Newest first, across all invoices."""
        rows = self._session.execute(
            select(AuditEntryModel)
            .order_by(AuditEntryModel.timestamp.desc(), AuditEntryModel.seq.desc())
            .limit(limit)
        ).scalars()
        return [r.to_dto() for r in rows]

    # -- messages ----------------------------------------------------------

    def create_message(self, message: Message) -> Message:
        model = MessageModel.from_dto(message)
        self._session.add(model)
        self._flush("create_message", message.invoice_id)
        return model.to_dto()

    def messages_for_invoice(self, invoice_id: str) -> list[Message]:
        rows = self._session.execute(
            select(MessageModel)
            .where(MessageModel.invoice_id == invoice_id)
            .order_by(MessageModel.created_at)
        ).scalars()
        return [r.to_dto() for r in rows]

    # -- users -------------------------------------------------------------

    def find_user(self, user_id: str | None) -> UserRecord | None:
        if not user_id:
            return None
        model = self._session.get(UserModel, user_id)
        return model.to_dto() if model is not None else None

    def find_user_for_update(self, user_id: str) -> UserRecord | None:
        model = self._session.execute(
            select(UserModel)
            .where(UserModel.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def add_user(self, user: UserRecord) -> UserRecord:
        model = UserModel.from_dto(user)
        self._session.add(model)
        self._flush("add_user", user.id)
        return model.to_dto()

    def update_user(self, user_id: str, fields: Mapping[str, Any]) -> UserRecord:
        model = self._session.get(UserModel, user_id)
        if model is None:
            raise UserNotFoundError(user_id)
        model.apply_fields(fields)
        self._flush("update_user", user_id)
        return model.to_dto()

    def find_delegators(self, delegate_id: str) -> Sequence[UserRecord]:
        rows = self._session.execute(
            select(UserModel).where(UserModel.delegated_to == delegate_id)
        ).scalars()
        return [r.to_dto() for r in rows]

    def list_users(self, active_only: bool = True) -> list[UserRecord]:
        stmt = select(UserModel).order_by(UserModel.name, UserModel.id)
        if active_only:
            stmt = stmt.where(UserModel.is_active.is_(True))
        return [r.to_dto() for r in self._session.execute(stmt).scalars()]

    # -- notifications -----------------------------------------------------

    def record_notification(
        self,
        *,
        invoice_id: str,
        event_type: str,
        status: str,
        recipient: str | None = None,
        subject: str | None = None,
        error: str | None = None,
    ) -> None:
        self._session.add(NotificationLogModel(
            invoice_id=invoice_id,
            event_type=event_type,
            recipient=recipient,
            subject=subject,
            status=status,
            error=error,
            created_at=self._clock.now(),
        ))
        self._flush("record_notification", invoice_id)
