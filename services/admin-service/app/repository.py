"""Database repository for account governance data."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import Connection, Cursor, OperationalError
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool, PoolTimeout

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
from .domain.errors import StoreUnavailableError

# Serialises every guarded mutation across all service instances.
GOVERNANCE_LOCK_KEY = 0x41444D4E

_ACCOUNT_COLUMNS = "account_id, email, name, role, active, created_at, promoted_by, promoted_at"

_ACTIVE_ADMINS = "(SELECT COUNT(*) FROM accounts WHERE role = 'admin' AND active)"
_ALL_ADMINS = "(SELECT COUNT(*) FROM accounts WHERE role = 'admin')"


class AccountRepository:
    """Postgres-backed account persistence with atomic governance guards.

    Each guarded mutation runs in a single transaction: it takes the governance
    advisory lock, reads the target row and admin counts, evaluates the policy,
    then issues a conditional write whose ``WHERE`` clause restates the guard.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        """Borrow a pooled connection, reporting connectivity failures as ``StoreUnavailableError``."""
        try:
            with self._pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            raise StoreUnavailableError(f"account store unavailable: {exc}") from exc

    def admin_counts(self) -> AdminCounts:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                return self._read_counts(cur)

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account or return ``None``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                    (account_id,),
                )
                row = cur.fetchone()
        return self._map_record(row) if row else None

    def list_accounts(self, query: AccountQuery) -> AccountPage:
        """Return one page of accounts matching the query plus the total match count."""
        clauses: list[str] = []
        params: list[Any] = []
        if query.search:
            pattern = "%" + _escape_like(query.search) + "%"
            clauses.append("(email ILIKE %s OR name ILIKE %s)")
            params.extend([pattern, pattern])
        if query.role is not None:
            clauses.append("role = %s")
            params.append(Role(query.role).value)
        if query.active is not None:
            clauses.append("active = %s")
            params.append(query.active)

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if query.descending else "ASC"
        # sort_by is validated against SORTABLE_FIELDS by AccountQuery
        select_sql = f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM accounts
            {where_sql}
            ORDER BY {query.sort_by} {direction}, account_id {direction}
            LIMIT %s OFFSET %s
        """

        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT COUNT(*) FROM accounts {where_sql}", params)
                total = cur.fetchone()[0]
                cur.execute(select_sql, [*params, query.limit, query.offset])
                items = [self._map_record(row) for row in cur.fetchall()]
        return AccountPage(items=items, total=total)

    def owned_resources(self, account_id: str, *, recent: int = 10) -> OwnedResources:
        """Load the most recent jobs, per-status job counts and settings of an account."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT job_id, company, role, status, created_at
                    FROM jobs
                    WHERE owner_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (account_id, recent),
                )
                jobs = [
                    OwnedJob(job_id=row[0], company=row[1], role=row[2], status=row[3], created_at=row[4])
                    for row in cur.fetchall()
                ]
                cur.execute(
                    "SELECT status, COUNT(*) FROM jobs WHERE owner_id = %s GROUP BY status",
                    (account_id,),
                )
                job_counts = {status: count for status, count in cur.fetchall()}
                cur.execute("SELECT settings FROM user_settings WHERE owner_id = %s", (account_id,))
                settings_row = cur.fetchone()
        return OwnedResources(
            recent_jobs=jobs,
            job_counts=job_counts,
            settings=settings_row[0] if settings_row else None,
        )

    def promote(self, account_id: str, *, actor: str | None, promoted_at: datetime) -> GuardedMutation:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                target, counts = self._lock_and_read(cur, account_id)
                outcome = policy.check_promote(target, counts)
                if outcome is not GuardOutcome.applied:
                    conn.rollback()
                    return GuardedMutation(outcome, target, counts)

                cur.execute(
                    f"""
                    UPDATE accounts
                    SET role = 'admin', promoted_by = %s, promoted_at = %s, updated_at = NOW()
                    WHERE account_id = %s AND role = 'standard' AND active AND {_ACTIVE_ADMINS} = 0
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (actor, promoted_at, account_id),
                )
                return self._finish(
                    conn,
                    cur,
                    target,
                    counts,
                    fallback=GuardOutcome.admin_exists,
                    event_type="account.promoted",
                    actor=actor,
                    metadata={"promoted_at": promoted_at.isoformat()},
                )

    def demote(self, account_id: str, *, actor: str | None) -> GuardedMutation:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                target, counts = self._lock_and_read(cur, account_id)
                outcome = policy.check_demote(target, counts)
                if outcome is not GuardOutcome.applied:
                    conn.rollback()
                    return GuardedMutation(outcome, target, counts)

                cur.execute(
                    f"""
                    UPDATE accounts
                    SET role = 'standard', promoted_by = NULL, promoted_at = NULL, updated_at = NOW()
                    WHERE account_id = %s AND role = 'admin' AND {_ACTIVE_ADMINS} > 1
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (account_id,),
                )
                return self._finish(
                    conn,
                    cur,
                    target,
                    counts,
                    fallback=GuardOutcome.last_admin,
                    event_type="account.demoted",
                    actor=actor,
                    metadata={"previously_promoted_by": target.promoted_by},
                )

    def set_active(self, account_id: str, active: bool, *, actor: str | None) -> GuardedMutation:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                target, counts = self._lock_and_read(cur, account_id)
                outcome = policy.check_set_active(target, counts, active)
                if outcome is not GuardOutcome.applied or target.active == active:
                    conn.rollback()
                    return GuardedMutation(outcome, target, counts)

                cur.execute(
                    f"""
                    UPDATE accounts
                    SET active = %s, updated_at = NOW()
                    WHERE account_id = %s
                      AND (%s OR NOT (role = 'admin' AND active) OR {_ACTIVE_ADMINS} > 1)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (active, account_id, active),
                )
                return self._finish(
                    conn,
                    cur,
                    target,
                    counts,
                    fallback=GuardOutcome.last_admin,
                    event_type="account.activated" if active else "account.deactivated",
                    actor=actor,
                    metadata={"active": active},
                )

    def delete_account(self, account_id: str, *, actor: str | None) -> GuardedMutation:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                target, counts = self._lock_and_read(cur, account_id)
                outcome = policy.check_delete(target, counts)
                if outcome is not GuardOutcome.applied:
                    conn.rollback()
                    return GuardedMutation(outcome, target, counts)

                cur.execute(
                    f"""
                    DELETE FROM accounts
                    WHERE account_id = %s
                      AND (
                        role <> 'admin'
                        OR ({_ALL_ADMINS} > 1 AND (NOT active OR {_ACTIVE_ADMINS} > 1))
                      )
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (account_id,),
                )
                return self._finish(
                    conn,
                    cur,
                    target,
                    counts,
                    fallback=GuardOutcome.last_admin,
                    event_type="account.deleted",
                    purge_owned=True,
                    actor=actor,
                    metadata={"email": target.email, "role": Role(target.role).value},
                )

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
        """Return audit log entries with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM admin_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit + 1)

        records: list[AuditLogRecord] = []
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=row[1],
                            event_type=row[2],
                            actor=row[3],
                            metadata=row[4] or {},
                            created_at=row[5],
                        )
                    )

        next_cursor: AuditCursor | None = None
        if len(records) > limit:
            records = records[:limit]
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def _lock_and_read(self, cur: Cursor, account_id: str) -> tuple[Account | None, AdminCounts]:
        """Take the governance lock, then read the target row and admin counts."""
        cur.execute("SELECT pg_advisory_xact_lock(%s)", (GOVERNANCE_LOCK_KEY,))
        cur.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s FOR UPDATE",
            (account_id,),
        )
        row = cur.fetchone()
        target = self._map_record(row) if row else None
        return target, self._read_counts(cur)

    def _read_counts(self, cur: Cursor) -> AdminCounts:
        cur.execute(
            """
            SELECT COUNT(*) FILTER (WHERE active), COUNT(*)
            FROM accounts
            WHERE role = 'admin'
            """
        )
        active, total = cur.fetchone()
        return AdminCounts(active=active, total=total)

    def _finish(
        self,
        conn: Connection,
        cur: Cursor,
        target: Account,
        counts: AdminCounts,
        *,
        fallback: GuardOutcome,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any],
        purge_owned: bool = False,
    ) -> GuardedMutation:
        """Commit a conditional write and its audit row, or roll back if the guard rejected it.

        With ``purge_owned`` the jobs and settings of the target are deleted in the
        same transaction, so a committed account delete never leaves them behind.
        """
        row = cur.fetchone()
        if row is None:
            conn.rollback()
            return GuardedMutation(fallback, target, counts)

        if purge_owned:
            cur.execute("DELETE FROM user_settings WHERE owner_id = %s", (target.account_id,))
            cur.execute("DELETE FROM jobs WHERE owner_id = %s", (target.account_id,))

        cur.execute(
            """
            INSERT INTO admin_audit_log (account_id, event_type, actor, metadata)
            VALUES (%s, %s, %s, %s)
            """,
            (target.account_id, event_type, actor, Json(metadata)),
        )
        conn.commit()
        return GuardedMutation(GuardOutcome.applied, self._map_record(row), counts, changed=True)

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            name=row[2],
            role=Role(row[3]),
            active=row[4],
            created_at=row[5],
            promoted_by=row[6],
            promoted_at=row[7],
        )



def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
