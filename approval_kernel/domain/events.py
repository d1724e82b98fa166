"""
Outbound status events.

The orchestrator publishes a ``StatusEvent`` after a transition commits; the
notification layer subscribes.  The kernel never imports a transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from approval_kernel.domain.dtos import InvoiceRecord, InvoiceStatus
from approval_kernel.domain.workflow import Stage, TransitionAction


class StatusEventType(str, Enum):
    RECEIVED = "RECEIVED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"
    PAID = "PAID"
    AWAITING_INFO = "AWAITING_INFO"
    REMINDER = "REMINDER"


@dataclass(frozen=True)
class StatusEvent:
    """Snapshot of the committed invoice plus the event it triggers."""

    invoice: InvoiceRecord
    event_type: StatusEventType
    actor_id: str | None = None
    occurred_at: datetime | None = None
    correlation_id: str | None = None


def event_type_for(action: TransitionAction) -> StatusEventType:
    """Event for a PM-stage or final-stage transition.

    APPROVE fires PENDING_APPROVAL at the PM stage (the invoice now waits on
    the final approver) and PAID at the final stage.
    """
    if action is TransitionAction.REQUEST_INFO:
        return StatusEventType.AWAITING_INFO
    if action in (TransitionAction.REJECT, TransitionAction.ADMIN_REJECT):
        return StatusEventType.REJECTED
    if action.stage is Stage.FINAL:
        return StatusEventType.PAID
    return StatusEventType.PENDING_APPROVAL


def event_type_for_status(status: InvoiceStatus) -> StatusEventType | None:
    """Event for a processing-path move, if that move notifies anyone."""
    return {
        InvoiceStatus.RECEIVED: StatusEventType.RECEIVED,
        InvoiceStatus.PENDING: StatusEventType.RECEIVED,
        InvoiceStatus.PENDING_APPROVAL: StatusEventType.PENDING_APPROVAL,
        InvoiceStatus.PAID: StatusEventType.PAID,
    }.get(status)
