"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable records that cross the boundary between the store and the
    decision logic: users (actors), invoices with their three approval
    sub-records, audit entries, automated messages and transition results.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    ORM models convert to and from these via ``to_dto()`` / ``from_dto()``;
    domain logic never touches ORM entities.

Invariants enforced:
    - ``InvoiceRecord.status`` is a closed ``InvoiceStatus`` member.
    - ``UserRecord.delegation`` is derived on every access, never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from approval_kernel.domain.clock import ensure_utc
from approval_kernel.domain.delegation import Delegation
from approval_kernel.domain.roles import CanonicalRole

# Single-currency domain
INVOICE_CURRENCY = "INR"


class InvoiceStatus(str, Enum):
    """Canonical invoice statuses.  Values are the stored labels."""

    RECEIVED = "RECEIVED"
    PENDING = "Pending"
    DIGITIZING = "DIGITIZING"
    VERIFIED = "VERIFIED"
    VALIDATION_REQUIRED = "VALIDATION_REQUIRED"
    MATCH_DISCREPANCY = "MATCH_DISCREPANCY"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PM_APPROVED = "PM Approved"
    INFO_REQUESTED = "Info Requested"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PAID = "PAID"


TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.APPROVED,
    InvoiceStatus.REJECTED,
    InvoiceStatus.PAID,
})

INITIAL_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.RECEIVED,
    InvoiceStatus.PENDING,
})


class ApprovalState(str, Enum):
    """Status of a single approval sub-record."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INFO_REQUESTED = "INFO_REQUESTED"


@dataclass(frozen=True)
class ApprovalRecord:
    """One approval gate's outcome.  Immutable."""

    status: ApprovalState = ApprovalState.PENDING
    approved_by: str | None = None
    approved_by_role: str | None = None
    approved_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def pending(cls) -> ApprovalRecord:
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "approvedBy": self.approved_by,
            "approvedByRole": self.approved_by_role,
            "approvedAt": self.approved_at.isoformat() if self.approved_at else None,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ApprovalRecord:
        if not data:
            return cls.pending()
        approved_at = data.get("approvedAt")
        if isinstance(approved_at, str):
            approved_at = datetime.fromisoformat(approved_at)
        return cls(
            status=ApprovalState(data.get("status") or ApprovalState.PENDING.value),
            approved_by=data.get("approvedBy"),
            approved_by_role=data.get("approvedByRole"),
            approved_at=ensure_utc(approved_at),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class UserRecord:
    """An actor.  ``role`` holds the raw stored label; normalize before use."""

    id: str
    role: CanonicalRole | str
    name: str | None = None
    email: str | None = None
    assigned_projects: frozenset[str] = field(default_factory=frozenset)
    delegated_to: str | None = None
    delegation_expires_at: datetime | None = None
    is_active: bool = True

    @property
    def delegation(self) -> Delegation | None:
        if not self.delegated_to:
            return None
        return Delegation(
            delegator_id=self.id,
            delegate_id=self.delegated_to,
            expires_at=self.delegation_expires_at,
        )

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id


@dataclass(frozen=True)
class InvoiceRecord:
    """The subject of the workflow."""

    id: str
    status: InvoiceStatus
    submitted_by_user_id: str | None = None
    vendor_id: str | None = None
    vendor_name: str | None = None
    project: str | None = None
    assigned_pm: str | None = None
    pm_approval: ApprovalRecord = field(default_factory=ApprovalRecord.pending)
    admin_approval: ApprovalRecord = field(default_factory=ApprovalRecord.pending)
    hil_review: ApprovalRecord = field(default_factory=ApprovalRecord.pending)
    amount: Decimal | None = None
    currency: str = INVOICE_CURRENCY
    invoice_number: str | None = None
    invoice_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def label(self) -> str:
        """Human-facing short reference used in subjects and messages."""
        return self.invoice_number or self.id[-6:]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class InvoiceDraft:
    """Caller-supplied fields for a new invoice."""

    invoice_number: str | None = None
    amount: Decimal | None = None
    invoice_date: date | None = None
    vendor_id: str | None = None
    vendor_name: str | None = None
    project: str | None = None
    assigned_pm: str | None = None
    invoice_id: str | None = None


class SubmissionChannel(str, Enum):
    """How an invoice entered the system: drives its initial status."""

    MANUAL = "manual"
    AUTOMATED = "automated"


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record of one mutating action on an invoice."""

    invoice_id: str
    username: str
    action: str
    details: str
    timestamp: datetime
    actor_id: str | None = None
    status: str | None = None
    id: str | None = None


class MessageType(str, Enum):
    INFO_REQUEST = "INFO_REQUEST"


@dataclass(frozen=True)
class Message:
    """Automated inter-party note raised by a transition."""

    id: str
    invoice_id: str
    project_id: str | None
    sender_id: str
    sender_name: str
    sender_role: str
    recipient_id: str
    recipient_name: str
    subject: str
    content: str
    message_type: MessageType
    thread_id: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of an orchestrator operation.

    ``applied`` is False for an idempotent repeat: nothing was written.
    """

    invoice_id: str
    action: str
    previous_status: InvoiceStatus
    new_status: InvoiceStatus
    applied: bool = True
    message_id: str | None = None
