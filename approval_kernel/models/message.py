"""
Module: approval_kernel.models.message
Responsibility: ORM persistence for automated inter-party messages raised
    by info requests.
Architecture position: Kernel > Models.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.clock import ensure_utc
from approval_kernel.domain.dtos import Message, MessageType


class MessageModel(Base):
    """A message row.  ``thread_id`` equals ``id`` for the opening message."""

    __tablename__ = "messages"

    __table_args__ = (
        Index("idx_message_invoice", "invoice_id"),
        Index("idx_message_recipient", "recipient_id"),
        Index("idx_message_thread", "thread_id"),
    )

    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_role: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(32), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> Message:
        """Convert ORM model to frozen domain DTO."""
        return Message(
            id=self.id,
            invoice_id=self.invoice_id,
            project_id=self.project_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            sender_role=self.sender_role,
            recipient_id=self.recipient_id,
            recipient_name=self.recipient_name,
            subject=self.subject,
            content=self.content,
            message_type=MessageType(self.message_type),
            thread_id=self.thread_id,
            created_at=ensure_utc(self.created_at),
        )

    @classmethod
    def from_dto(cls, dto: Message) -> MessageModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.id,
            invoice_id=dto.invoice_id,
            project_id=dto.project_id,
            sender_id=dto.sender_id,
            sender_name=dto.sender_name,
            sender_role=dto.sender_role,
            recipient_id=dto.recipient_id,
            recipient_name=dto.recipient_name,
            subject=dto.subject,
            content=dto.content,
            message_type=dto.message_type.value,
            thread_id=dto.thread_id,
            created_at=dto.created_at,
        )
