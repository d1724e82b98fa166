"""
approval_services -- orchestration over the approval kernel.

Responsibility:
    The only layer that opens sessions, owns transactions and runs
    background threads: the ``ApprovalOrchestrator`` (every invoice status
    change) and the notification dispatch layer.

Architecture position:
    Services.  Dependency direction:
        approval_services/ -> approval_config/  (allowed)
        approval_services/ -> approval_kernel/  (allowed)
        approval_kernel/   -> approval_services/ (FORBIDDEN)
"""

from approval_services.notifications import (
    NotificationDispatcher,
    OutboundEmail,
    ReminderSummary,
    StatusNotifier,
    send_pending_approval_reminders,
)
from approval_services.orchestrator import ApprovalOrchestrator

__all__ = [
    "ApprovalOrchestrator",
    "NotificationDispatcher",
    "OutboundEmail",
    "ReminderSummary",
    "StatusNotifier",
    "send_pending_approval_reminders",
]
