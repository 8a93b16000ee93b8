from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    standard = "standard"
    admin = "admin"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user account and its administrative role."""

    account_id: str
    email: str
    name: str
    created_at: datetime
    role: Role = Role.standard
    active: bool = True
    promoted_by: str | None = None
    promoted_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin

    @property
    def is_active_admin(self) -> bool:
        return self.is_admin and self.active
