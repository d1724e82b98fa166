"""
Canonical roles (``approval_kernel.domain.roles``).

Responsibility
--------------
Maps free-form role strings and their aliases onto the closed
``CanonicalRole`` enum.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Normalization is total: every input yields a value, never an error.
* Unknown strings pass through unchanged as plain ``str``.  They are never
  promoted to a ``CanonicalRole``, so consumers gating on
  ``isinstance(role, CanonicalRole)`` treat them as unprivileged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum


class CanonicalRole(str, Enum):
    """Roles after alias normalization.  Values are the stored labels."""

    ADMIN = "Admin"
    PROJECT_MANAGER = "PM"
    FINANCE_USER = "Finance User"
    VENDOR = "Vendor"


@dataclass(frozen=True)
class RoleAliases:
    """Alias table: lower-cased alias -> canonical role."""

    aliases: Mapping[str, CanonicalRole]

    @classmethod
    def from_lists(
        cls, lists: Mapping[CanonicalRole, tuple[str, ...]],
    ) -> RoleAliases:
        table: dict[str, CanonicalRole] = {}
        for role, names in lists.items():
            for name in names:
                key = name.strip().lower()
                existing = table.get(key)
                if existing is not None and existing is not role:
                    raise ValueError(
                        f"Alias {name!r} maps to both {existing.name} and {role.name}"
                    )
                table[key] = role
        return cls(aliases=table)

    def lookup(self, raw: str) -> CanonicalRole | None:
        return self.aliases.get(raw.strip().lower())


DEFAULT_ROLE_ALIASES = RoleAliases.from_lists({
    CanonicalRole.ADMIN: ("admin",),
    CanonicalRole.PROJECT_MANAGER: (
        "projectmanager",
        "project manager",
        "project-manager",
        "project_manager",
        "pm",
    ),
    CanonicalRole.FINANCE_USER: (
        "financeuser",
        "finance user",
        "finance-user",
        "finance_user",
    ),
    CanonicalRole.VENDOR: ("vendor",),
})


class RoleNormalizer:
    """Case-insensitive alias resolution over an injected alias table."""

    def __init__(self, aliases: RoleAliases = DEFAULT_ROLE_ALIASES):
        self._aliases = aliases

    def normalize(self, raw_role: CanonicalRole | str | None) -> CanonicalRole | str:
        if isinstance(raw_role, CanonicalRole):
            return raw_role
        if not raw_role:
            return ""
        # Stored labels ("Finance User", "PM") resolve through the alias table too
        return self._aliases.lookup(raw_role) or raw_role


def normalize_role(
    raw_role: CanonicalRole | str | None,
    aliases: RoleAliases = DEFAULT_ROLE_ALIASES,
) -> CanonicalRole | str:
    """Module-level convenience over ``RoleNormalizer``."""
    return RoleNormalizer(aliases).normalize(raw_role)


def is_canonical(role: object, expected: CanonicalRole) -> bool:
    """True iff ``role`` is the canonical member ``expected``.

    ``CanonicalRole`` is a ``str`` enum, so ``"Admin" == CanonicalRole.ADMIN``
    holds for a raw string.  Grants must only follow real members.
    """
    return isinstance(role, CanonicalRole) and role is expected
