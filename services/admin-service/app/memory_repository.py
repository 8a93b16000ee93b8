"""In-memory account store honouring the same atomicity contract as Postgres."""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Iterable, Optional

from .domain import policy
from .domain.account import Account, Role
from .domain.contracts import (
    AccountPage,
    AccountQuery,
    AdminCounts,
    AuditCursor,
    AuditLogRecord,
    GuardedMutation,
    GuardOutcome,
    OwnedJob,
    OwnedResources,
)


class InMemoryAccountRepository:
    """Thread-safe account store for local development and tests.

    A single re-entrant lock covers every read-evaluate-write sequence, so a
    guarded mutation observes the counts and target exactly as it leaves them.
    """

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._accounts: dict[str, Account] = {}
        self._jobs: dict[str, list[OwnedJob]] = {}
        self._settings: dict[str, dict[str, Any]] = {}
        self._audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0
        self._lock = RLock()
        for account in accounts:
            self.add_account(account)

    def add_account(self, account: Account) -> Account:
        """Insert or replace an account, as the registration flow would."""
        with self._lock:
            self._accounts[account.account_id] = replace(account)
        return replace(account)

    def add_job(self, owner_id: str, job: OwnedJob) -> None:
        with self._lock:
            self._jobs.setdefault(owner_id, []).append(replace(job))

    def put_settings(self, owner_id: str, settings: dict[str, Any]) -> None:
        with self._lock:
            self._settings[owner_id] = dict(settings)

    def admin_counts(self) -> AdminCounts:
        with self._lock:
            return self._counts()

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def list_accounts(self, query: AccountQuery) -> AccountPage:
        with self._lock:
            matches = [replace(account) for account in self._accounts.values() if _matches(account, query)]
        matches.sort(key=lambda account: getattr(account, query.sort_by), reverse=query.descending)
        return AccountPage(items=matches[query.offset : query.offset + query.limit], total=len(matches))

    def owned_resources(self, account_id: str, *, recent: int = 10) -> OwnedResources:
        with self._lock:
            jobs = [replace(job) for job in self._jobs.get(account_id, [])]
            settings = self._settings.get(account_id)
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return OwnedResources(
            recent_jobs=jobs[:recent],
            job_counts=dict(Counter(job.status for job in jobs)),
            settings=dict(settings) if settings is not None else None,
        )

    def promote(self, account_id: str, *, actor: str | None, promoted_at: datetime) -> GuardedMutation:
        def apply(account: Account) -> dict[str, Any]:
            account.role = Role.admin
            account.promoted_by = actor
            account.promoted_at = promoted_at
            return {"promoted_at": promoted_at.isoformat()}

        return self._guarded(account_id, policy.check_promote, apply, "account.promoted", actor)

    def demote(self, account_id: str, *, actor: str | None) -> GuardedMutation:
        def apply(account: Account) -> dict[str, Any]:
            previous = account.promoted_by
            account.role = Role.standard
            account.promoted_by = None
            account.promoted_at = None
            return {"previously_promoted_by": previous}

        return self._guarded(account_id, policy.check_demote, apply, "account.demoted", actor)

    def set_active(self, account_id: str, active: bool, *, actor: str | None) -> GuardedMutation:
        def check(target: Account | None, counts: AdminCounts) -> GuardOutcome:
            return policy.check_set_active(target, counts, active)

        def apply(account: Account) -> dict[str, Any] | None:
            if account.active == active:
                return None
            account.active = active
            return {"active": active}

        event_type = "account.activated" if active else "account.deactivated"
        return self._guarded(account_id, check, apply, event_type, actor)

    def delete_account(self, account_id: str, *, actor: str | None) -> GuardedMutation:
        with self._lock:
            target = self._accounts.get(account_id)
            counts = self._counts()
            outcome = policy.check_delete(target, counts)
            if outcome is not GuardOutcome.applied:
                return GuardedMutation(outcome, replace(target) if target else None, counts)
            del self._accounts[account_id]
            self._jobs.pop(account_id, None)
            self._settings.pop(account_id, None)
            self._write_audit_event(
                account_id=account_id,
                event_type="account.deleted",
                actor=actor,
                metadata={"email": target.email, "role": Role(target.role).value},
            )
            return GuardedMutation(outcome, replace(target), counts, changed=True)

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]:
        limit = max(1, min(limit, 100))
        with self._lock:
            results = list(self._audit_log)
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def _guarded(
        self,
        account_id: str,
        check: Callable[[Account | None, AdminCounts], GuardOutcome],
        apply: Callable[[Account], dict[str, Any] | None],
        event_type: str,
        actor: str | None,
    ) -> GuardedMutation:
        with self._lock:
            target = self._accounts.get(account_id)
            counts = self._counts()
            outcome = check(target, counts)
            if outcome is not GuardOutcome.applied:
                return GuardedMutation(outcome, replace(target) if target else None, counts)
            metadata = apply(target)
            changed = metadata is not None
            if changed:
                self._write_audit_event(
                    account_id=account_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=metadata,
                )
            return GuardedMutation(outcome, replace(target), counts, changed=changed)

    def _counts(self) -> AdminCounts:
        admins = [account for account in self._accounts.values() if account.is_admin]
        return AdminCounts(active=sum(1 for account in admins if account.active), total=len(admins))

    def _write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any],
    ) -> None:
        self._audit_seq += 1
        self._audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata,
                created_at=datetime.now(timezone.utc),
            )
        )


def _matches(account: Account, query: AccountQuery) -> bool:
    if query.role is not None and account.role != query.role:
        return False
    if query.active is not None and account.active != query.active:
        return False
    if query.search:
        needle = query.search.lower()
        return needle in account.email.lower() or needle in account.name.lower()
    return True
