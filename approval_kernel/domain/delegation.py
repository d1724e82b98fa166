"""
Delegation of approver authority (``approval_kernel.domain.delegation``).

Responsibility
--------------
Time-bounded grants of a project manager's project scope to another user,
and the computation of an actor's *effective* scope from the grants that
point at them.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  Time always
enters as an argument; nothing here reads a clock.

Invariants enforced
-------------------
* A delegation is live iff it names a delegate and ``now < expires_at``.
  Liveness is recomputed on every call and never stored.
* Delegation extends, never replaces: the effective scope is the actor's
  own projects plus those of each live, active PM delegator.  Roles are unchanged.
* Directional: only grants *to* the actor count; grants *from* the actor
  leave the actor's own scope untouched.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from approval_kernel.domain.roles import (
    CanonicalRole,
    RoleNormalizer,
    is_canonical,
)

if TYPE_CHECKING:
    from approval_kernel.domain.dtos import UserRecord

DEFAULT_DELEGATION_DAYS = 7


@dataclass(frozen=True)
class Delegation:
    """A grant from ``delegator_id`` to ``delegate_id`` until ``expires_at``."""

    delegator_id: str
    delegate_id: str
    expires_at: datetime | None

    def is_live(self, now: datetime) -> bool:
        if not self.delegate_id or self.expires_at is None:
            return False
        return now < self.expires_at


def delegation_expiry(now: datetime, duration_days: int) -> datetime:
    """Expiry instant for a delegation created at ``now``."""
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise ValueError(f"duration_days must be an integer, got {duration_days!r}")
    if duration_days <= 0:
        raise ValueError(f"duration_days must be positive, got {duration_days}")
    return now + timedelta(days=duration_days)


def live_delegated_projects(
    delegate_id: str,
    delegators: Iterable[UserRecord],
    now: datetime,
    normalizer: RoleNormalizer | None = None,
) -> frozenset[str]:
    """Projects granted to ``delegate_id`` by live PM delegations."""
    normalizer = normalizer or RoleNormalizer()
    projects: set[str] = set()
    for delegator in delegators:
        if delegator.id == delegate_id or not delegator.is_active:
            continue
        if not is_canonical(
            normalizer.normalize(delegator.role), CanonicalRole.PROJECT_MANAGER,
        ):
            continue
        grant = delegator.delegation
        if grant is None or grant.delegate_id != delegate_id:
            continue
        if grant.is_live(now):
            projects |= delegator.assigned_projects
    return frozenset(projects)


def effective_actor(
    actor: UserRecord,
    delegators: Iterable[UserRecord],
    now: datetime,
    normalizer: RoleNormalizer | None = None,
) -> UserRecord:
    """Return ``actor`` with delegated project scope folded in.

    The result is what the permission evaluator sees; the evaluator itself
    never consults delegation.
    """
    delegated = live_delegated_projects(actor.id, delegators, now, normalizer)
    if not delegated - actor.assigned_projects:
        return actor
    return replace(actor, assigned_projects=actor.assigned_projects | delegated)
