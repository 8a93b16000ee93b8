"""Account-related DTOs shared across services."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class AccountRole(str, Enum):
    standard = "standard"
    admin = "admin"


class AccountSummary(BaseModel):
    account_id: str
    email: str
    name: str
    role: AccountRole
    active: bool
    created_at: datetime
    promoted_by: str | None = None
    promoted_at: datetime | None = None

    class Config:
        use_enum_values = True
