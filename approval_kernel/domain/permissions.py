"""
Permission evaluation (``approval_kernel.domain.permissions``).

Responsibility
--------------
Pure ``allowed(actor, action, resource?)`` decisions over an injected
``PermissionPolicy`` table, with project scoping for approval actions.

Architecture position
---------------------
**Kernel domain layer** -- pure.  ZERO I/O, no clock, no store.  Delegation
is resolved one layer up (``domain.delegation.effective_actor``) before the
actor reaches this module, so the decision stays a table lookup plus a
set-membership check.

Invariants enforced
-------------------
* Superuser roles (ADMIN) are allowed every action.
* Default-deny: any ``(role, action)`` pair not granted is refused.
* Unknown roles never match a grant (``is_canonical`` gating).
* ``authorize_approval`` always requires a resource; only ``allowed`` and
  ``can_potentially_approve`` answer capability probes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from approval_kernel.domain.dtos import InvoiceRecord, UserRecord
from approval_kernel.domain.roles import (
    DEFAULT_ROLE_ALIASES,
    CanonicalRole,
    RoleAliases,
    RoleNormalizer,
)
from approval_kernel.exceptions import ForbiddenError


class ActionKind(str, Enum):
    """Permission-checked actions."""

    APPROVE_INVOICE = "APPROVE_INVOICE"
    FINALIZE_PAYMENT = "FINALIZE_PAYMENT"
    SUBMIT_INVOICE = "SUBMIT_INVOICE"
    VIEW_AUDIT_LOGS = "VIEW_AUDIT_LOGS"
    CONFIGURE_SYSTEM = "CONFIGURE_SYSTEM"
    MANAGE_USERS = "MANAGE_USERS"
    PROCESS_DISCREPANCIES = "PROCESS_DISCREPANCIES"
    MANUAL_ENTRY = "MANUAL_ENTRY"
    VIEW_COMPLIANCE = "VIEW_COMPLIANCE"
    VIEW_ALL_INVOICES = "VIEW_ALL_INVOICES"


def _freeze(table: Mapping[ActionKind, frozenset[CanonicalRole]]) -> Mapping:
    return MappingProxyType({k: frozenset(v) for k, v in table.items()})


@dataclass(frozen=True)
class PermissionPolicy:
    """Immutable permission table.

    ``grants`` are unconditional.  ``project_scoped`` grants additionally
    require ``resource.project in actor.assigned_projects`` when a resource
    is supplied.
    """

    superuser_roles: frozenset[CanonicalRole] = frozenset({CanonicalRole.ADMIN})
    # Roles that see every invoice; everyone else sees only their own scope
    global_viewers: frozenset[CanonicalRole] = frozenset({CanonicalRole.FINANCE_USER})
    grants: Mapping[ActionKind, frozenset[CanonicalRole]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    project_scoped: Mapping[ActionKind, frozenset[CanonicalRole]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    role_aliases: RoleAliases = DEFAULT_ROLE_ALIASES
    checksum: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "grants", _freeze(self.grants))
        object.__setattr__(self, "project_scoped", _freeze(self.project_scoped))
        overlap = {
            action
            for action, roles in self.project_scoped.items()
            if roles & self.grants.get(action, frozenset())
        }
        if overlap:
            raise ValueError(
                "Roles cannot be both unconditionally and project-scoped "
                f"granted for: {sorted(a.value for a in overlap)}"
            )


DEFAULT_PERMISSION_POLICY = PermissionPolicy(
    grants={
        ActionKind.APPROVE_INVOICE: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.FINALIZE_PAYMENT: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.SUBMIT_INVOICE: frozenset({
            CanonicalRole.VENDOR, CanonicalRole.FINANCE_USER,
        }),
        ActionKind.VIEW_AUDIT_LOGS: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.PROCESS_DISCREPANCIES: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.MANUAL_ENTRY: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.VIEW_COMPLIANCE: frozenset({CanonicalRole.FINANCE_USER}),
        ActionKind.VIEW_ALL_INVOICES: frozenset({
            CanonicalRole.FINANCE_USER,
            CanonicalRole.PROJECT_MANAGER,
            CanonicalRole.VENDOR,
        }),
    },
    project_scoped={
        ActionKind.APPROVE_INVOICE: frozenset({CanonicalRole.PROJECT_MANAGER}),
    },
)


class PermissionEvaluator:
    """Side-effect-free permission decisions over a ``PermissionPolicy``."""

    def __init__(self, policy: PermissionPolicy = DEFAULT_PERMISSION_POLICY):
        self._policy = policy
        self._normalizer = RoleNormalizer(policy.role_aliases)

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    @property
    def normalizer(self) -> RoleNormalizer:
        return self._normalizer

    def role_of(self, actor: UserRecord | None) -> CanonicalRole | str:
        if actor is None:
            return ""
        return self._normalizer.normalize(actor.role)

    def allowed(
        self,
        actor: UserRecord | None,
        action: ActionKind,
        resource: InvoiceRecord | None = None,
    ) -> bool:
        """The table decision.  ``resource=None`` on a project-scoped action
        is a capability probe and passes the scope check."""
        return self._decide(actor, action, resource, require_resource=False)

    def can_potentially_approve(self, actor: UserRecord | None) -> bool:
        """UI-affordance probe: could this actor approve *some* invoice?"""
        return self._decide(
            actor, ActionKind.APPROVE_INVOICE, None, require_resource=False,
        )

    def authorize_approval(
        self, actor: UserRecord | None, invoice: InvoiceRecord,
    ) -> bool:
        """Mutation check for a PM-stage action on a concrete invoice."""
        if invoice is None:
            raise ValueError("authorize_approval requires an invoice")
        return self._decide(
            actor, ActionKind.APPROVE_INVOICE, invoice, require_resource=True,
        )

    def authorize(
        self,
        actor: UserRecord,
        action: ActionKind,
        resource: InvoiceRecord | None = None,
    ) -> None:
        """Raising variant for services.

        Project-scoped grants are only honoured here with a resource.
        """
        if not self._decide(actor, action, resource, require_resource=True):
            raise ForbiddenError(
                actor_id=actor.id,
                action=action.value,
                reason=f"role {str(self.role_of(actor))!r} is not permitted",
                resource_id=resource.id if resource is not None else None,
            )

    def can_view_invoice(
        self, actor: UserRecord | None, invoice: InvoiceRecord,
    ) -> bool:
        """Visibility of one invoice and its audit trail.

        PMs see invoices in their (effective) projects or assigned to them;
        vendors see what they submitted.
        """
        if actor is None:
            return False
        role = self.role_of(actor)
        if not isinstance(role, CanonicalRole):
            return False
        if role in self._policy.superuser_roles or role in self._policy.global_viewers:
            return True
        if role is CanonicalRole.PROJECT_MANAGER:
            return (
                bool(invoice.project) and invoice.project in actor.assigned_projects
            ) or (bool(invoice.assigned_pm) and invoice.assigned_pm == actor.id)
        if role is CanonicalRole.VENDOR:
            return bool(invoice.submitted_by_user_id) and (
                invoice.submitted_by_user_id == actor.id
            )
        return False

    def _decide(
        self,
        actor: UserRecord | None,
        action: ActionKind,
        resource: InvoiceRecord | None,
        *,
        require_resource: bool,
    ) -> bool:
        if actor is None:
            return False
        role = self.role_of(actor)
        if not isinstance(role, CanonicalRole):
            return False
        if role in self._policy.superuser_roles:
            return True
        if role in self._policy.grants.get(action, frozenset()):
            return True
        if role in self._policy.project_scoped.get(action, frozenset()):
            if resource is None:
                return not require_resource
            return bool(resource.project) and resource.project in actor.assigned_projects
        return False
