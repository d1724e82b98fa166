"""
ORM-level append-only enforcement for the audit trail.

Audit entries are written once by the orchestrator and never changed.  The
listeners below intercept SQLAlchemy's before_update / before_delete events
for ``AuditEntryModel`` and raise ``ImmutabilityViolationError`` before any
SQL reaches the database, aborting the flush.

    session.flush()
         |
         v
    [before_update] --> _check_audit_entry_update() --> ImmutabilityViolationError
    [before_delete] --> _check_audit_entry_delete() --> ImmutabilityViolationError

Usage:

    from approval_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # create_tables() calls this

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()

Inline model imports avoid a models -> db -> models cycle.
"""

from sqlalchemy import event

from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_update(mapper, connection, target):
    """Block any UPDATE of an audit entry."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries are append-only and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Block any DELETE of an audit entry."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )


_LISTENERS = (
    ("before_update", _check_audit_entry_update),
    ("before_delete", _check_audit_entry_delete),
)


def register_immutability_listeners() -> None:
    """Register the audit listeners.  Safe to call repeatedly."""
    from approval_kernel.models.audit_entry import AuditEntryModel

    for name, fn in _LISTENERS:
        if not event.contains(AuditEntryModel, name, fn):
            event.listen(AuditEntryModel, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove the audit listeners.  TESTS ONLY."""
    from approval_kernel.models.audit_entry import AuditEntryModel

    for name, fn in _LISTENERS:
        if event.contains(AuditEntryModel, name, fn):
            event.remove(AuditEntryModel, name, fn)
