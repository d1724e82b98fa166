"""
Module: approval_kernel.models.user
Responsibility: ORM persistence for users, their project assignments and
    their (denormalized) outgoing delegation.
Architecture position: Kernel > Models.

Invariants enforced:
    - role holds the raw stored label; normalization happens in the domain.
    - Delegation liveness is never stored; only delegated_to and
      delegation_expires_at are.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.clock import ensure_utc
from approval_kernel.domain.dtos import UserRecord

_MUTABLE_FIELDS = frozenset({
    "role",
    "name",
    "email",
    "assigned_projects",
    "delegated_to",
    "delegation_expires_at",
    "is_active",
})


class UserModel(Base):
    """A user row."""

    __tablename__ = "users"

    __table_args__ = (
        Index("idx_user_role", "role"),
        Index("idx_user_delegated_to", "delegated_to"),
    )

    role: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_projects: Mapped[list | None] = mapped_column(JSON, nullable=True)
    delegated_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delegation_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<UserModel {self.id} {self.role}>"

    def apply_fields(self, fields: Mapping[str, Any]) -> None:
        for name, value in fields.items():
            if name not in _MUTABLE_FIELDS:
                raise ValueError(f"Unknown user field: {name}")
            if name == "assigned_projects" and value is not None:
                value = sorted(value)
            elif name == "role" and value is not None:
                value = str(getattr(value, "value", value))
            setattr(self, name, value)

    def to_dto(self) -> UserRecord:
        """Convert ORM model to frozen domain DTO."""
        return UserRecord(
            id=self.id,
            role=self.role,
            name=self.name,
            email=self.email,
            assigned_projects=frozenset(self.assigned_projects or ()),
            delegated_to=self.delegated_to,
            delegation_expires_at=ensure_utc(self.delegation_expires_at),
            is_active=self.is_active if self.is_active is not None else True,
        )

    @classmethod
    def from_dto(cls, dto: UserRecord) -> UserModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.id,
            role=str(getattr(dto.role, "value", dto.role)),
            name=dto.name,
            email=dto.email,
            assigned_projects=sorted(dto.assigned_projects),
            delegated_to=dto.delegated_to,
            delegation_expires_at=dto.delegation_expires_at,
            is_active=dto.is_active,
        )
