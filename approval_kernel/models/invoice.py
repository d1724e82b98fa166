"""
Module: approval_kernel.models.invoice
Responsibility: ORM persistence for invoices and their three approval
    sub-records.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (DTOs for to_dto/from_dto).

Invariants enforced:
    - status holds an InvoiceStatus label.  Only the orchestrator writes it.
    - Approval sub-records are stored as JSON objects with the camelCase keys
      of ``ApprovalRecord.to_dict()``; an absent record reads back PENDING.
    - apply_fields() merges a partial update and leaves every other column
      untouched.

Failure modes:
    - ValueError from to_dto() if a stored status is not a canonical label.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.clock import ensure_utc
from approval_kernel.domain.dtos import (
    INVOICE_CURRENCY,
    ApprovalRecord,
    InvoiceRecord,
    InvoiceStatus,
)

_RECORD_FIELDS = ("pm_approval", "admin_approval", "hil_review")

_SCALAR_FIELDS = (
    "submitted_by_user_id",
    "vendor_id",
    "vendor_name",
    "project",
    "assigned_pm",
    "amount",
    "currency",
    "invoice_number",
    "invoice_date",
    "created_at",
    "updated_at",
)


class InvoiceModel(Base):
    """An invoice row."""

    __tablename__ = "invoices"

    __table_args__ = (
        Index("idx_invoice_status", "status"),
        Index("idx_invoice_project", "project"),
        Index("idx_invoice_submitter", "submitted_by_user_id"),
    )

    status: Mapped[str] = mapped_column(String(32), nullable=False)

    submitted_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vendor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vendor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    project: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_pm: Mapped[str | None] = mapped_column(String(64), nullable=True)

    pm_approval: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    admin_approval: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    hil_review: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default=INVOICE_CURRENCY,
    )
    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.id} {self.status}>"

    def apply_fields(self, fields: Mapping[str, Any]) -> None:
        """Merge a partial update into this row."""
        for name, value in fields.items():
            if name == "id":
                continue
            if name == "status":
                self.status = InvoiceStatus(value).value
            elif name in _RECORD_FIELDS:
                if isinstance(value, ApprovalRecord):
                    value = value.to_dict()
                setattr(self, name, value)
            elif name in _SCALAR_FIELDS:
                setattr(self, name, value)
            else:
                raise ValueError(f"Unknown invoice field: {name}")

    def to_dto(self) -> InvoiceRecord:
        """Convert ORM model to frozen domain DTO."""
        return InvoiceRecord(
            id=self.id,
            status=InvoiceStatus(self.status),
            submitted_by_user_id=self.submitted_by_user_id,
            vendor_id=self.vendor_id,
            vendor_name=self.vendor_name,
            project=self.project,
            assigned_pm=self.assigned_pm,
            pm_approval=ApprovalRecord.from_dict(self.pm_approval),
            admin_approval=ApprovalRecord.from_dict(self.admin_approval),
            hil_review=ApprovalRecord.from_dict(self.hil_review),
            amount=self.amount,
            currency=self.currency or INVOICE_CURRENCY,
            invoice_number=self.invoice_number,
            invoice_date=self.invoice_date,
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )

    @classmethod
    def from_dto(cls, dto: InvoiceRecord) -> InvoiceModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.id,
            status=dto.status.value,
            submitted_by_user_id=dto.submitted_by_user_id,
            vendor_id=dto.vendor_id,
            vendor_name=dto.vendor_name,
            project=dto.project,
            assigned_pm=dto.assigned_pm,
            pm_approval=dto.pm_approval.to_dict(),
            admin_approval=dto.admin_approval.to_dict(),
            hil_review=dto.hil_review.to_dict(),
            amount=dto.amount,
            currency=dto.currency,
            invoice_number=dto.invoice_number,
            invoice_date=dto.invoice_date,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
        )
