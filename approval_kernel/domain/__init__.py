"""
Pure domain layer.

Data transfer objects and decision logic with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (time is always an argument)
- I/O

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.delegation import (
    DEFAULT_DELEGATION_DAYS,
    Delegation,
    delegation_expiry,
    effective_actor,
    live_delegated_projects,
)
from approval_kernel.domain.dtos import (
    INVOICE_CURRENCY,
    TERMINAL_STATUSES,
    ApprovalRecord,
    ApprovalState,
    AuditEntry,
    InvoiceDraft,
    InvoiceRecord,
    InvoiceStatus,
    Message,
    MessageType,
    SubmissionChannel,
    TransitionResult,
    UserRecord,
)
from approval_kernel.domain.events import StatusEvent, StatusEventType, event_type_for
from approval_kernel.domain.permissions import (
    DEFAULT_PERMISSION_POLICY,
    ActionKind,
    PermissionEvaluator,
    PermissionPolicy,
)
from approval_kernel.domain.roles import (
    DEFAULT_ROLE_ALIASES,
    CanonicalRole,
    RoleAliases,
    RoleNormalizer,
    normalize_role,
)
from approval_kernel.domain.workflow import (
    Stage,
    TransitionAction,
    TransitionPlan,
    assert_consistent,
    parse_action,
    plan_processing,
    plan_transition,
)

__all__ = [
    # Time
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Roles
    "CanonicalRole",
    "DEFAULT_ROLE_ALIASES",
    "RoleAliases",
    "RoleNormalizer",
    "normalize_role",
    # Permissions
    "ActionKind",
    "DEFAULT_PERMISSION_POLICY",
    "PermissionEvaluator",
    "PermissionPolicy",
    # Delegation
    "DEFAULT_DELEGATION_DAYS",
    "Delegation",
    "delegation_expiry",
    "effective_actor",
    "live_delegated_projects",
    # DTOs
    "INVOICE_CURRENCY",
    "TERMINAL_STATUSES",
    "ApprovalRecord",
    "ApprovalState",
    "AuditEntry",
    "InvoiceDraft",
    "InvoiceRecord",
    "InvoiceStatus",
    "Message",
    "MessageType",
    "SubmissionChannel",
    "TransitionResult",
    "UserRecord",
    # Workflow
    "Stage",
    "TransitionAction",
    "TransitionPlan",
    "assert_consistent",
    "parse_action",
    "plan_processing",
    "plan_transition",
    # Events
    "StatusEvent",
    "StatusEventType",
    "event_type_for",
]
