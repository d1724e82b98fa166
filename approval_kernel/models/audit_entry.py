"""
Module: approval_kernel.models.audit_entry
Responsibility: ORM persistence for the per-invoice audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only
    (plus domain DTOs for conversion).

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py listeners).
    - seq orders entries written within the same clock instant.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.clock import ensure_utc
from approval_kernel.domain.dtos import AuditEntry


class AuditEntryModel(Base):
    """
    One audit record.

    Contract:
        Written once by the orchestrator inside the same transaction as the
        invoice write it describes.  Never updated or deleted.
    """

    __tablename__ = "audit_entries"

    __table_args__ = (
        Index("idx_audit_invoice", "invoice_id", "timestamp"),
        Index("idx_audit_timestamp", "timestamp"),
    )

    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<AuditEntryModel {self.action} on {self.invoice_id}>"

    def to_dto(self) -> AuditEntry:
        """Convert ORM model to frozen domain DTO."""
        return AuditEntry(
            id=self.id,
            invoice_id=self.invoice_id,
            username=self.username,
            action=self.action,
            details=self.details,
            timestamp=ensure_utc(self.timestamp),
            actor_id=self.actor_id,
            status=self.status,
        )

    @classmethod
    def from_dto(cls, dto: AuditEntry, seq: int = 0) -> AuditEntryModel:
        """Create ORM model from domain DTO."""
        model = cls(
            invoice_id=dto.invoice_id,
            username=dto.username,
            action=dto.action,
            details=dto.details,
            timestamp=dto.timestamp,
            actor_id=dto.actor_id,
            status=dto.status,
            seq=seq,
        )
        if dto.id:
            model.id = dto.id
        return model
