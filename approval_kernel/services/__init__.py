"""Kernel services: persistence, audit trail, delegation directory."""

from approval_kernel.services.audit_recorder import AuditRecorder
from approval_kernel.services.delegation_directory import DelegationDirectory
from approval_kernel.services.keyed_lock import KeyedLock
from approval_kernel.services.store import SqlAlchemyStore

__all__ = [
    "AuditRecorder",
    "DelegationDirectory",
    "KeyedLock",
    "SqlAlchemyStore",
]
