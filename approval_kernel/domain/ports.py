"""
Collaborator interfaces consumed by the orchestrator and notification layer.

Architecture position:
    Kernel > Domain -- pure interface declarations, zero I/O.
    ``approval_kernel.services.store.SqlAlchemyStore`` implements ``Store``;
    ``approval_services.notifications`` implements ``Notifier`` and
    ``EventPublisher``.  Tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from approval_kernel.domain.dtos import (
    AuditEntry,
    InvoiceRecord,
    Message,
    UserRecord,
)
from approval_kernel.domain.events import StatusEvent, StatusEventType


class DeliveryStatus(str, Enum):
    """Notifier outcome."""

    SENT = "SENT"
    FAILED = "FAILED"


class Store(Protocol):
    """Persistence surface for one unit of work."""

    def get(self, invoice_id: str) -> InvoiceRecord | None:
        ...

    def get_for_update(self, invoice_id: str) -> InvoiceRecord | None:
        """Load and row-lock until the enclosing transaction ends."""
        ...

    def upsert(self, invoice_id: str, fields: Mapping[str, Any]) -> InvoiceRecord:
        """Merge ``fields`` into the stored invoice, creating it if absent."""
        ...

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        ...

    def create_message(self, message: Message) -> Message:
        ...

    def find_user(self, user_id: str) -> UserRecord | None:
        ...

    def update_user(self, user_id: str, fields: Mapping[str, Any]) -> UserRecord:
        ...

    def find_delegators(self, delegate_id: str) -> Sequence[UserRecord]:
        """Users whose stored delegation names ``delegate_id`` (live or not)."""
        ...


@runtime_checkable
class Notifier(Protocol):
    def notify(
        self, invoice: InvoiceRecord, event_type: StatusEventType,
    ) -> DeliveryStatus:
        """Deliver one notification.  Logs its own outcome."""
        ...


@runtime_checkable
class EventPublisher(Protocol):
    def publish(self, event: StatusEvent) -> None:
        """Hand off an event.  Must not block on delivery."""
        ...


@runtime_checkable
class EmailTransport(Protocol):
    def send(self, *, sender: str, to: str, subject: str, body: str) -> None:
        """Send one email.  Raises on delivery failure."""
        ...


class NullPublisher:
    """Publisher that drops every event."""

    def publish(self, event: StatusEvent) -> None:
        return None
