"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads the policy and notification YAML files and parses them into frozen
dataclasses: the kernel's ``PermissionPolicy`` (with its ``RoleAliases``)
and ``approval_config.schema.NotificationSettings``.  Runtime callers go
through ``approval_config.get_active_policy()`` /
``get_notification_settings()`` rather than calling this directly.

Architecture position
---------------------
**Config layer** -- sits above ``approval_kernel`` and builds kernel value
objects.  The kernel never imports from here.

Invariants enforced
-------------------
* No silent defaults for unknown names: an unknown role or action key
  raises ``ValueError``.
* A role's stored label always resolves to it, whether or not the YAML
  lists it as an alias.
* ``compute_checksum`` is a deterministic SHA-256 over the canonical JSON
  form of the parsed YAML.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown role / action, conflicting alias  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import NOTIFICATION_ENV_OVERRIDES, NotificationSettings
from approval_kernel.domain.permissions import ActionKind, PermissionPolicy
from approval_kernel.domain.roles import CanonicalRole, RoleAliases


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 checksum of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_role(name: Any) -> CanonicalRole:
    try:
        return CanonicalRole[str(name).strip().upper()]
    except KeyError:
        raise ValueError(
            f"Unknown role {name!r}. Must be one of "
            f"{', '.join(r.name for r in CanonicalRole)}"
        ) from None


def parse_action_kind(name: Any) -> ActionKind:
    try:
        return ActionKind[str(name).strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown action {name!r}") from None


def parse_role_set(values: Any) -> frozenset[CanonicalRole]:
    return frozenset(parse_role(v) for v in (values or ()))


def parse_grant_table(
    data: Mapping[str, Any] | None,
) -> dict[ActionKind, frozenset[CanonicalRole]]:
    return {
        parse_action_kind(action): parse_role_set(roles)
        for action, roles in (data or {}).items()
    }


def parse_role_aliases(data: Mapping[str, Any] | None) -> RoleAliases:
    """
    Parse the ``roles`` section into a ``RoleAliases`` table.

    Every canonical role resolves from its own stored label even when
    the section omits it.
    """
    lists: dict[CanonicalRole, tuple[str, ...]] = {
        role: (role.value,) for role in CanonicalRole
    }
    for name, section in (data or {}).items():
        role = parse_role(name)
        aliases = tuple(str(a) for a in ((section or {}).get("aliases") or ()))
        lists[role] = lists[role] + aliases
    return RoleAliases.from_lists(lists)


def parse_policy(data: dict[str, Any]) -> PermissionPolicy:
    """
    Parse a ``PermissionPolicy`` from the policy YAML dict.

    Postconditions:
        - Returns a frozen ``PermissionPolicy`` whose ``checksum`` identifies
          ``data``.
    """
    kwargs: dict[str, Any] = {
        "grants": parse_grant_table(data.get("grants")),
        "project_scoped": parse_grant_table(data.get("project_scoped")),
        "role_aliases": parse_role_aliases(data.get("roles")),
        "checksum": compute_checksum(data),
    }
    if "superuser_roles" in data:
        kwargs["superuser_roles"] = parse_role_set(data["superuser_roles"])
    if "global_viewers" in data:
        kwargs["global_viewers"] = parse_role_set(data["global_viewers"])
    return PermissionPolicy(**kwargs)


def load_policy(path: Path) -> PermissionPolicy:
    return parse_policy(load_yaml_file(path))


def parse_notification_settings(data: dict[str, Any]) -> NotificationSettings:
    known = {f.name for f in fields(NotificationSettings)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown notification settings: {sorted(unknown)}")
    values = dict(data)
    if "reminder_limit" in values:
        values["reminder_limit"] = int(values["reminder_limit"])
    return NotificationSettings(**values)


def apply_env_overrides(
    settings: NotificationSettings, environ: Mapping[str, str],
) -> NotificationSettings:
    """Overlay non-empty environment variables onto ``settings``."""
    overrides = {
        field_name: environ[var]
        for var, field_name in NOTIFICATION_ENV_OVERRIDES.items()
        if environ.get(var)
    }
    return replace(settings, **overrides) if overrides else settings
