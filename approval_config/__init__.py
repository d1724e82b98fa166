"""
approval_config -- single public entrypoint for approval configuration.

Responsibility:
    ``get_active_policy()`` returns the permission/role policy the
    orchestrator and evaluators are constructed with;
    ``get_notification_settings()`` returns sender identity and fixed
    recipients, with environment overrides applied.  YAML loading is
    internal tooling.

Architecture position:
    Configuration -- sits above ``approval_kernel`` and below
    ``approval_services``.  The kernel MUST NEVER import from here; it
    receives the built ``PermissionPolicy`` by injection.

Audit relevance:
    Every ``get_active_policy()`` call emits an ``APPROVAL_POLICY_TRACE``
    log entry with the policy checksum, tying each decision back to the
    exact policy file that governed it.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from approval_config.loader import (
    apply_env_overrides,
    load_policy,
    load_yaml_file,
    parse_notification_settings,
)
from approval_config.schema import NotificationSettings
from approval_kernel.domain.permissions import PermissionPolicy
from approval_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULTS_DIR = Path(__file__).parent / "defaults"
DEFAULT_POLICY_PATH = _DEFAULTS_DIR / "policy.yaml"
DEFAULT_NOTIFICATIONS_PATH = _DEFAULTS_DIR / "notifications.yaml"


def get_active_policy(path: Path | None = None) -> PermissionPolicy:
    """
    Load the permission policy.

    Args:
        path: Alternate policy file.  Defaults to the packaged
            ``defaults/policy.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file names an unknown role or action.
    """
    policy_path = path or DEFAULT_POLICY_PATH
    policy = load_policy(policy_path)
    _logger.info(
        "APPROVAL_POLICY_TRACE",
        extra={
            "trace_type": "APPROVAL_POLICY_TRACE",
            "policy_path": str(policy_path),
            "checksum": policy.checksum,
            "grant_count": sum(len(r) for r in policy.grants.values()),
            "project_scoped_count": sum(len(r) for r in policy.project_scoped.values()),
        },
    )
    return policy


def get_notification_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> NotificationSettings:
    """
    Load notification settings and overlay environment variables.

    Args:
        path: Alternate settings file.
        environ: Environment mapping.  Defaults to ``os.environ``.
    """
    settings = parse_notification_settings(
        load_yaml_file(path or DEFAULT_NOTIFICATIONS_PATH)
    )
    return apply_env_overrides(settings, os.environ if environ is None else environ)


__all__ = [
    "DEFAULT_NOTIFICATIONS_PATH",
    "DEFAULT_POLICY_PATH",
    "NotificationSettings",
    "get_active_policy",
    "get_notification_settings",
]
