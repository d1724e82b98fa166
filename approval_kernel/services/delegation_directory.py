"""
DelegationDirectory -- per-user, time-bounded delegation of approver scope.

Responsibility:
    Sets and clears a project manager's outgoing delegation, answers
    liveness at the current clock instant, and resolves the project scope a
    user holds through delegations pointing at them.

Architecture position:
    Kernel > Services -- imperative shell over ``SqlAlchemyStore``.  The
    liveness rule itself lives in ``domain.delegation``.

Invariants enforced:
    - Own-record only: a delegation is set or cleared by the acting PROJECT
      MANAGER on their own user record; no user writes another's.
    - Lazy expiry: nothing clears an expired delegation; it is simply not
      live.  Liveness is recomputed from the stored expiry on every call.
    - ``clear_delegation`` is idempotent.
    - The user row is read with ``SELECT ... FOR UPDATE`` so the
      authorize-then-write pair is atomic per user id.

Failure modes:
    - UnauthenticatedError: actor id missing or unknown.
    - ForbiddenError: actor is not a PROJECT_MANAGER, or targets another
      user's record.
    - InvalidDelegationError: self-delegation or a non-positive duration.
    - UserNotFoundError: the named delegate does not exist.
"""

from __future__ import annotations

from datetime import datetime

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import (
    DEFAULT_DELEGATION_DAYS,
    Delegation,
    delegation_expiry,
    live_delegated_projects,
)
from approval_kernel.domain.dtos import UserRecord
from approval_kernel.domain.roles import CanonicalRole, RoleNormalizer, is_canonical
from approval_kernel.exceptions import (
    ForbiddenError,
    InvalidDelegationError,
    UnauthenticatedError,
    UserNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.services.store import SqlAlchemyStore

logger = get_logger("services.delegation")

_SET = "SET_DELEGATION"
_CLEAR = "CLEAR_DELEGATION"


class DelegationDirectory:
    """
    Contract:
        Mutations flush within the caller's transaction; reads never write.

    Non-goals:
        - Does NOT sweep expired delegations.
        - Does NOT decide permissions; it only supplies the delegated scope
          that ``domain.delegation.effective_actor`` folds in.
    """

    def __init__(
        self,
        store: SqlAlchemyStore,
        clock: Clock | None = None,
        normalizer: RoleNormalizer | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._normalizer = normalizer or RoleNormalizer()

    def _authorize_own_record(
        self, actor_id: str | None, user_id: str, operation: str,
    ) -> UserRecord:
        if not actor_id:
            raise UnauthenticatedError()
        if actor_id != user_id:
            raise ForbiddenError(
                actor_id=actor_id,
                action=operation,
                reason="delegation can only be changed on the actor's own record",
                resource_id=user_id,
            )
        actor = self._store.find_user_for_update(actor_id)
        if actor is None:
            raise UnauthenticatedError(actor_id)
        role = self._normalizer.normalize(actor.role)
        if not is_canonical(role, CanonicalRole.PROJECT_MANAGER):
            raise ForbiddenError(
                actor_id=actor_id,
                action=operation,
                reason=f"only project managers can delegate (role {str(role)!r})",
            )
        return actor

    def set_delegation(
        self,
        actor_id: str | None,
        user_id: str,
        delegate_id: str | None,
        duration_days: int = DEFAULT_DELEGATION_DAYS,
    ) -> UserRecord:
        """Delegate ``user_id``'s project scope to ``delegate_id``.

        An empty ``delegate_id`` clears the delegation.
        """
        actor = self._authorize_own_record(actor_id, user_id, _SET)
        if not delegate_id:
            return self._clear(actor)
        if delegate_id == user_id:
            raise InvalidDelegationError(user_id, "cannot delegate to yourself")

        now = self._clock.now()
        try:
            expires_at = delegation_expiry(now, duration_days)
        except ValueError as exc:
            raise InvalidDelegationError(user_id, str(exc)) from exc

        delegate = self._store.find_user(delegate_id)
        if delegate is None:
            raise UserNotFoundError(delegate_id)
        if not delegate.is_active:
            raise InvalidDelegationError(user_id, f"delegate {delegate_id} is inactive")

        updated = self._store.update_user(user_id, {
            "delegated_to": delegate_id,
            "delegation_expires_at": expires_at,
        })
        logger.info(
            "delegation_set",
            extra={
                "delegator_id": user_id,
                "delegate_id": delegate_id,
                "expires_at": expires_at,
                "duration_days": duration_days,
            },
        )
        return updated

    def clear_delegation(self, actor_id: str | None, user_id: str) -> UserRecord:
        """Remove any delegation.  Clearing an absent one succeeds."""
        actor = self._authorize_own_record(actor_id, user_id, _CLEAR)
        return self._clear(actor)

    def _clear(self, actor: UserRecord) -> UserRecord:
        if actor.delegated_to is None and actor.delegation_expires_at is None:
            return actor
        updated = self._store.update_user(actor.id, {
            "delegated_to": None,
            "delegation_expires_at": None,
        })
        logger.info(
            "delegation_cleared",
            extra={"delegator_id": actor.id, "previous_delegate_id": actor.delegated_to},
        )
        return updated

    def _require_user(self, user_id: str) -> UserRecord:
        user = self._store.find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def current_delegation(self, user_id: str) -> Delegation | None:
        """The stored delegation, live or expired."""
        return self._require_user(user_id).delegation

    def is_live(self, user_id: str, now: datetime | None = None) -> bool:
        grant = self.current_delegation(user_id)
        return grant is not None and grant.is_live(now or self._clock.now())

    def eligible_delegates(self, user_id: str) -> list[UserRecord]:
        """Active finance users other than ``user_id``."""
        return [
            u for u in self._store.list_users(active_only=True)
            if u.id != user_id
            and is_canonical(
                self._normalizer.normalize(u.role), CanonicalRole.FINANCE_USER,
            )
        ]

    def delegators_of(self, user_id: str) -> list[UserRecord]:
        """Project managers whose delegation to ``user_id`` is live now."""
        now = self._clock.now()
        return [
            d for d in self._store.find_delegators(user_id)
            if d.id != user_id and d.is_active
            and is_canonical(
                self._normalizer.normalize(d.role), CanonicalRole.PROJECT_MANAGER,
            )
            and d.delegation is not None
            and d.delegation.is_live(now)
        ]

    def accessible_projects(self, user_id: str) -> frozenset[str]:
        """Own projects plus those held through live delegations."""
        user = self._require_user(user_id)
        delegated = live_delegated_projects(
            user_id,
            self._store.find_delegators(user_id),
            self._clock.now(),
            self._normalizer,
        )
        return user.assigned_projects | delegated
