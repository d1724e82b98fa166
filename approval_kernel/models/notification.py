"""
Module: approval_kernel.models.notification
Responsibility: ORM persistence for notification delivery attempts.
Architecture position: Kernel > Models.

One row per attempt, SENT or FAILED, so delivery problems are visible
without scraping logs.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base


class NotificationLogModel(Base):
    """A notification attempt."""

    __tablename__ = "notification_logs"

    __table_args__ = (
        Index("idx_notification_invoice", "invoice_id"),
    )

    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return f"<NotificationLogModel {self.event_type} {self.status} {self.invoice_id}>"
