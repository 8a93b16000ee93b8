"""Domain-level contracts shared by the service and the store backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

from .account import Account, Role


@dataclass(slots=True, frozen=True)
class AdminCounts:
    """Admin head-counts read from the store at a single instant."""

    active: int
    total: int


class GuardOutcome(str, Enum):
    applied = "applied"
    not_found = "not_found"
    not_admin = "not_admin"
    already_admin = "already_admin"
    inactive = "inactive"
    admin_exists = "admin_exists"
    last_admin = "last_admin"


@dataclass(slots=True)
class GuardedMutation:
    """Result of a guarded store mutation.

    ``account`` carries the post-mutation state when the outcome is ``applied``
    and the unchanged state (or ``None``) otherwise. ``counts`` are the admin
    counts the guard was evaluated against.
    """

    outcome: GuardOutcome
    account: Account | None
    counts: AdminCounts
    changed: bool = False


SORTABLE_FIELDS = ("created_at", "email", "name")


@dataclass(slots=True)
class AccountQuery:
    """Filters and pagination accepted when listing accounts."""

    search: str | None = None
    role: Role | None = None
    active: bool | None = None
    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    descending: bool = True

    def __post_init__(self) -> None:
        if self.sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"cannot sort by {self.sort_by!r}")
        self.page = max(1, self.page)
        self.limit = max(1, min(self.limit, 100))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class AccountPage:
    items: list[Account] = field(default_factory=list)
    total: int = 0


@dataclass(slots=True)
class AuditLogRecord:
    """Audit trail entry written alongside every applied governance mutation."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


AuditCursor = Tuple[datetime, int]


@dataclass(slots=True)
class OwnedJob:
    """A job application tracked by an account."""

    job_id: str
    company: str
    role: str
    status: str
    created_at: datetime


@dataclass(slots=True)
class OwnedResources:
    """What an account owns: its most recent jobs, per-status job counts and settings."""

    recent_jobs: list[OwnedJob] = field(default_factory=list)
    job_counts: dict[str, int] = field(default_factory=dict)
    settings: dict[str, Any] | None = None


class AccountStore(Protocol):
    """Persistence contract the governance service relies on.

    Every guarded mutation must read the target and the admin counts and apply
    its change as one indivisible step. ``delete_account`` removes the jobs and
    settings the account owns in that same step.
    """

    def admin_counts(self) -> AdminCounts: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def list_accounts(self, query: AccountQuery) -> AccountPage: ...

    def owned_resources(self, account_id: str, *, recent: int = 10) -> OwnedResources: ...

    def promote(self, account_id: str, *, actor: str | None, promoted_at: datetime) -> GuardedMutation: ...

    def demote(self, account_id: str, *, actor: str | None) -> GuardedMutation: ...

    def set_active(self, account_id: str, active: bool, *, actor: str | None) -> GuardedMutation: ...

    def delete_account(self, account_id: str, *, actor: str | None) -> GuardedMutation: ...

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]: ...


class OwnedResourceCleaner(Protocol):
    """Removes resources an account owns outside the account store.

    Purging must be idempotent: the service re-runs it when a delete is retried.
    """

    def purge_owned_resources(self, account_id: str) -> None: ...
