"""
Configuration schema (``approval_config.schema``).

Frozen dataclasses for configuration that has no kernel counterpart.  The
permission policy itself parses straight into the kernel's
``PermissionPolicy``.
"""

from __future__ import annotations

from dataclasses import dataclass

# Environment variable -> NotificationSettings field
NOTIFICATION_ENV_OVERRIDES: dict[str, str] = {
    "COMPANY_NAME": "company_name",
    "FROM_EMAIL": "from_email",
    "FINANCE_TEAM_EMAIL": "finance_team_email",
    "PM_APPROVER_EMAIL": "pm_approver_email",
}


@dataclass(frozen=True)
class NotificationSettings:
    """Sender identity and fixed recipient addresses for notifications."""

    company_name: str = "Invoice Tracker"
    from_email: str = "system@invoicetracker.internal"
    finance_team_email: str = "finance-team@example.com"
    pm_approver_email: str = "pm-approver@example.com"
    reminder_limit: int = 50

    def __post_init__(self) -> None:
        if self.reminder_limit <= 0:
            raise ValueError(
                f"reminder_limit must be positive, got {self.reminder_limit}"
            )
