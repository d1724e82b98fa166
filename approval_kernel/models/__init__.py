"""SQLAlchemy ORM models for the approval kernel."""

from approval_kernel.models.audit_entry import AuditEntryModel
from approval_kernel.models.invoice import InvoiceModel
from approval_kernel.models.message import MessageModel
from approval_kernel.models.notification import NotificationLogModel
from approval_kernel.models.user import UserModel

__all__ = [
    "AuditEntryModel",
    "InvoiceModel",
    "MessageModel",
    "NotificationLogModel",
    "UserModel",
]
