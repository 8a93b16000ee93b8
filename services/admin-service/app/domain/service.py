"""Admin governance service guarding role, status, and deletion changes."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Callable, Optional, Tuple

from . import policy
from .account import Account
from .contracts import (
    AccountPage,
    AccountQuery,
    AccountStore,
    AuditLogRecord,
    GuardedMutation,
    GuardOutcome,
    OwnedResourceCleaner,
    OwnedResources,
)
from .errors import ConflictError, GovernanceError, NotFoundError, PreconditionError

logger = logging.getLogger(__name__)

_MESSAGES: dict[GuardOutcome, str] = {
    GuardOutcome.not_found: "account not found",
    GuardOutcome.not_admin: "account is not an admin",
    GuardOutcome.already_admin: "account is already an admin",
    GuardOutcome.inactive: "account is inactive",
}

_ERRORS: dict[GuardOutcome, type[Exception]] = {
    GuardOutcome.not_found: NotFoundError,
    GuardOutcome.not_admin: PreconditionError,
    GuardOutcome.already_admin: PreconditionError,
    GuardOutcome.inactive: PreconditionError,
    GuardOutcome.admin_exists: ConflictError,
    GuardOutcome.last_admin: ConflictError,
}


@dataclass(slots=True)
class GovernanceStatus:
    """Snapshot of the admin head-counts and whether promotion is open."""

    active_admins: int
    total_admins: int
    can_promote: bool


@dataclass(slots=True)
class AccountDetails:
    account: Account
    resources: OwnedResources


class AdminGovernanceService:
    """Enforces the single-active-admin invariant across account mutations.

    Counts are never cached: every guard is evaluated by the store against the
    state it holds at the moment the mutation is applied.
    """

    def __init__(
        self,
        store: AccountStore,
        cleaner: OwnedResourceCleaner | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Store dependencies used to evaluate guards and cascade deletions."""
        self._store = store
        self._cleaner = cleaner
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def can_promote(self) -> bool:
        """Return ``True`` only while the store holds no active admin."""
        return policy.can_promote(self._store.admin_counts())

    def governance_status(self) -> GovernanceStatus:
        counts = self._store.admin_counts()
        return GovernanceStatus(
            active_admins=counts.active,
            total_admins=counts.total,
            can_promote=policy.can_promote(counts),
        )

    def get_account(self, account_id: str) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise NotFoundError(_MESSAGES[GuardOutcome.not_found])
        return account

    def get_account_details(self, account_id: str, *, recent_jobs: int = 10) -> AccountDetails:
        """Return an account with its most recent jobs, job counts and settings."""
        account = self.get_account(account_id)
        return AccountDetails(account, self._store.owned_resources(account_id, recent=recent_jobs))

    def list_accounts(self, query: AccountQuery) -> AccountPage:
        return self._store.list_accounts(query)

    def promote(self, account_id: str, actor: str | None = None) -> Account:
        """Grant the admin role to ``account_id``.

        Raises
        ------
        ConflictError
            An active admin already exists.
        NotFoundError
            The account does not exist.
        PreconditionError
            The account is already an admin or is deactivated.
        """
        result = self._store.promote(account_id, actor=actor, promoted_at=self._clock())
        return self._unwrap(
            "promote", account_id, actor, result, "only one admin is allowed; an active admin already exists"
        )

    def demote(self, account_id: str, actor: str | None = None) -> Account:
        """Return an admin to the standard role, refusing to remove the last active admin."""
        result = self._store.demote(account_id, actor=actor)
        return self._unwrap("demote", account_id, actor, result, "cannot demote the last admin")

    def set_active(self, account_id: str, active: bool, actor: str | None = None) -> Account:
        """Activate or deactivate an account; repeating the current state is a no-op."""
        result = self._store.set_active(account_id, active, actor=actor)
        return self._unwrap("set_active", account_id, actor, result, "cannot deactivate the last active admin")

    def delete_account(self, account_id: str, actor: str | None = None) -> None:
        """Permanently remove an account together with the jobs and settings it owns.

        The store drops owned rows in the same step as the account. A configured
        cleaner runs afterwards for resources held elsewhere. If it fails, the
        caller can retry: a retry that finds the account already gone runs the
        cleaner again before reporting ``NotFoundError``.
        """
        result = self._store.delete_account(account_id, actor=actor)
        if self._cleaner is not None and result.outcome in (GuardOutcome.applied, GuardOutcome.not_found):
            try:
                self._cleaner.purge_owned_resources(account_id)
            except GovernanceError:
                logger.error("purging resources owned by account %s failed; retry the delete", account_id)
                raise
        self._unwrap("delete", account_id, actor, result, "cannot delete the last admin")

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._store.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _unwrap(
        self,
        operation: str,
        account_id: str,
        actor: str | None,
        result: GuardedMutation,
        conflict_message: str,
    ) -> Account:
        if result.outcome is GuardOutcome.applied:
            if result.changed:
                logger.info("%s applied to account %s by %s", operation, account_id, actor)
            return result.account

        message = _MESSAGES.get(result.outcome, conflict_message)
        logger.warning(
            "%s rejected for account %s by %s: %s (active_admins=%d, total_admins=%d)",
            operation,
            account_id,
            actor,
            result.outcome.value,
            result.counts.active,
            result.counts.total,
        )
        raise _ERRORS[result.outcome](message)

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
