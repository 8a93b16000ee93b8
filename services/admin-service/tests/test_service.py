from __future__ import annotations

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.account import Role
from app.domain.contracts import AccountQuery, OwnedJob
from app.domain.errors import ConflictError, NotFoundError, PreconditionError, StoreUnavailableError
from app.domain.service import AdminGovernanceService
from app.memory_repository import InMemoryAccountRepository


def test_empty_store_promotes_first_admin(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann"))

    assert service.can_promote()
    promoted = service.promote(acc1.account_id, actor="bootstrap")

    assert promoted.role is Role.admin
    assert promoted.promoted_by == "bootstrap"
    assert promoted.promoted_at is not None
    assert store.admin_counts().active == 1
    assert not service.can_promote()


def test_second_promotion_conflicts(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))
    acc2 = store.add_account(account_factory("Bob"))

    with pytest.raises(ConflictError, match="an active admin already exists"):
        service.promote(acc2.account_id, actor=acc1.account_id)
    assert store.get_account(acc2.account_id).role is Role.standard


def test_demoting_the_only_admin_conflicts(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))

    with pytest.raises(ConflictError, match="last admin"):
        service.demote(acc1.account_id)
    assert store.get_account(acc1.account_id).role is Role.admin


def test_demote_down_to_one_admin_then_conflict(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))
    acc2 = store.add_account(account_factory("Bob", role=Role.admin))

    demoted = service.demote(acc1.account_id, actor=acc2.account_id)
    assert demoted.role is Role.standard
    assert demoted.promoted_by is None and demoted.promoted_at is None
    assert store.admin_counts().active == 1

    with pytest.raises(ConflictError):
        service.demote(acc2.account_id)


def test_deleting_the_only_admin_conflicts(service, store, cleaner, account_factory):
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))

    with pytest.raises(ConflictError):
        service.delete_account(acc1.account_id)
    assert store.get_account(acc1.account_id) is not None
    assert cleaner.purged == []


@pytest.mark.parametrize("admins", [0, 1, 2])
def test_deleting_a_standard_account_always_succeeds(service, store, cleaner, account_factory, admins):
    for idx in range(admins):
        store.add_account(account_factory(f"Admin{idx}", role=Role.admin))
    member = store.add_account(account_factory("Member"))

    service.delete_account(member.account_id)

    assert store.get_account(member.account_id) is None
    assert cleaner.purged == [member.account_id]
    assert store.admin_counts().active == admins


def test_deleting_an_active_admin_beside_an_inactive_one_conflicts(service, store, account_factory):
    active_admin = store.add_account(account_factory("Ann", role=Role.admin))
    store.add_account(account_factory("Bob", role=Role.admin, active=False))

    with pytest.raises(ConflictError):
        service.delete_account(active_admin.account_id)


def test_deleting_an_inactive_admin_is_allowed(service, store, account_factory):
    store.add_account(account_factory("Ann", role=Role.admin))
    dormant = store.add_account(account_factory("Bob", role=Role.admin, active=False))

    service.delete_account(dormant.account_id)
    assert store.admin_counts().total == 1


def test_missing_accounts_raise_not_found(service):
    with pytest.raises(NotFoundError):
        service.promote("missing")
    with pytest.raises(NotFoundError):
        service.demote("missing")
    with pytest.raises(NotFoundError):
        service.set_active("missing", False)
    with pytest.raises(NotFoundError):
        service.delete_account("missing")
    with pytest.raises(NotFoundError):
        service.get_account("missing")


def test_promote_rejects_existing_or_inactive_targets(service, store, account_factory):
    dormant_admin = store.add_account(account_factory("Ann", role=Role.admin, active=False))
    dormant = store.add_account(account_factory("Bob", active=False))

    with pytest.raises(PreconditionError):
        service.promote(dormant_admin.account_id)
    with pytest.raises(PreconditionError):
        service.promote(dormant.account_id)


def test_demoting_a_standard_account_is_a_precondition_failure(service, store, account_factory):
    store.add_account(account_factory("Ann", role=Role.admin))
    store.add_account(account_factory("Bob", role=Role.admin))
    member = store.add_account(account_factory("Cid"))

    with pytest.raises(PreconditionError):
        service.demote(member.account_id)


def test_deactivating_the_last_active_admin_conflicts(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))
    store.add_account(account_factory("Bob", role=Role.admin, active=False))

    with pytest.raises(ConflictError):
        service.set_active(acc1.account_id, False)
    assert store.get_account(acc1.account_id).active


def test_set_active_true_is_idempotent(service, store, account_factory):
    member = store.add_account(account_factory("Ann"))

    first = service.set_active(member.account_id, True)
    second = service.set_active(member.account_id, True)

    assert first.active and second.active
    records, _ = store.list_audit_events(account_id=member.account_id)
    assert records == []


def test_mutations_write_audit_events(service, store, account_factory):
    acc1 = store.add_account(account_factory("Ann"))
    acc2 = store.add_account(account_factory("Bob"))

    service.promote(acc1.account_id, actor="root")
    service.set_active(acc2.account_id, False, actor=acc1.account_id)
    service.delete_account(acc2.account_id, actor=acc1.account_id)

    records, next_cursor = service.list_audit_events()
    assert next_cursor is None
    assert [record.event_type for record in records] == [
        "account.deleted",
        "account.deactivated",
        "account.promoted",
    ]
    assert records[-1].actor == "root"


def test_promote_uses_the_service_clock(store, account_factory):
    fixed = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
    service = AdminGovernanceService(store, clock=lambda: fixed)
    acc1 = store.add_account(account_factory("Ann"))

    assert service.promote(acc1.account_id, actor="root").promoted_at == fixed


def test_audit_cursor_round_trips_through_pages(service, store, account_factory):
    accounts = [store.add_account(account_factory(f"User{idx}")) for idx in range(5)]
    for account in accounts:
        service.set_active(account.account_id, False)

    first_page, cursor = service.list_audit_events(limit=3)
    assert len(first_page) == 3 and cursor
    second_page, final_cursor = service.list_audit_events(limit=3, cursor=cursor)
    assert len(second_page) == 2 and final_cursor is None
    seen = {record.audit_id for record in first_page + second_page}
    assert len(seen) == 5


def test_invalid_audit_cursor_is_rejected(service):
    with pytest.raises(ValueError):
        service.list_audit_events(cursor="not-valid")


@pytest.mark.parametrize("seed", range(10))
def test_random_operation_sequences_keep_an_active_admin(seed, account_factory):
    rng = random.Random(seed)
    store = InMemoryAccountRepository(account_factory(f"User{idx}") for idx in range(6))
    service = AdminGovernanceService(store)
    ids = [account.account_id for account in store.list_accounts(AccountQuery(limit=100)).items]
    reached_one = False

    for _ in range(200):
        before = store.admin_counts().active
        operation = rng.choice(["promote", "demote", "deactivate", "activate", "delete"])
        target = rng.choice(ids)
        try:
            if operation == "promote":
                service.promote(target)
                assert before == 0
            elif operation == "demote":
                service.demote(target)
            elif operation == "deactivate":
                service.set_active(target, False)
            elif operation == "activate":
                service.set_active(target, True)
            else:
                service.delete_account(target)
                ids.remove(target)
        except (ConflictError, NotFoundError, PreconditionError):
            pass

        active = store.admin_counts().active
        reached_one = reached_one or active >= 1
        if reached_one:
            assert active >= 1
        if not ids:
            break


def test_promote_succeeds_only_from_zero_active_admins(service, store, account_factory):
    candidates = [store.add_account(account_factory(f"User{idx}")) for idx in range(3)]
    outcomes = []
    for candidate in candidates:
        before = store.admin_counts().active
        try:
            service.promote(candidate.account_id)
            outcomes.append((before, True))
        except ConflictError:
            outcomes.append((before, False))
    assert outcomes == [(0, True), (1, False), (1, False)]


def test_concurrent_demotions_leave_one_admin(account_factory):
    for _ in range(20):
        store = InMemoryAccountRepository()
        acc1 = store.add_account(account_factory("Ann", role=Role.admin))
        acc2 = store.add_account(account_factory("Bob", role=Role.admin))
        service = AdminGovernanceService(store)
        barrier = threading.Barrier(2)

        def demote(account_id: str) -> str:
            barrier.wait()
            try:
                service.demote(account_id)
                return "ok"
            except ConflictError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = sorted(pool.map(demote, [acc1.account_id, acc2.account_id]))

        assert results == ["conflict", "ok"]
        assert store.admin_counts().active == 1


def test_concurrent_promotions_admit_one_admin(account_factory):
    store = InMemoryAccountRepository()
    candidates = [store.add_account(account_factory(f"User{idx}")) for idx in range(8)]
    service = AdminGovernanceService(store)
    barrier = threading.Barrier(len(candidates))

    def promote(account_id: str) -> bool:
        barrier.wait()
        try:
            service.promote(account_id)
            return True
        except ConflictError:
            return False

    with ThreadPoolExecutor(max_workers=len(candidates)) as pool:
        results = list(pool.map(promote, [account.account_id for account in candidates]))

    assert results.count(True) == 1
    assert store.admin_counts().active == 1


def _race_two_admins(account_factory, operation):
    """Run ``operation`` on two active admins at once; return sorted outcomes and the store."""
    store = InMemoryAccountRepository()
    acc1 = store.add_account(account_factory("Ann", role=Role.admin))
    acc2 = store.add_account(account_factory("Bob", role=Role.admin))
    service = AdminGovernanceService(store)
    barrier = threading.Barrier(2)

    def run(account_id: str) -> str:
        barrier.wait()
        try:
            operation(service, account_id)
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = sorted(pool.map(run, [acc1.account_id, acc2.account_id]))
    return results, store


def test_concurrent_deactivations_leave_one_active_admin(account_factory):
    for _ in range(20):
        results, store = _race_two_admins(
            account_factory, lambda service, account_id: service.set_active(account_id, False)
        )
        assert results == ["conflict", "ok"]
        assert store.admin_counts().active == 1
        assert store.admin_counts().total == 2


def test_concurrent_deletions_leave_one_active_admin(account_factory):
    for _ in range(20):
        results, store = _race_two_admins(
            account_factory, lambda service, account_id: service.delete_account(account_id)
        )
        assert results == ["conflict", "ok"]
        assert store.admin_counts().active == 1
        assert store.admin_counts().total == 1


class FlakyCleaner:
    """Cleaner whose first purge fails as if its backing store were down."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.purged: list[str] = []

    def purge_owned_resources(self, account_id: str) -> None:
        self.calls.append(account_id)
        if len(self.calls) == 1:
            raise StoreUnavailableError("resource store unavailable")
        self.purged.append(account_id)


def test_failed_cleanup_is_completed_by_retrying_the_delete(store, account_factory):
    cleaner = FlakyCleaner()
    service = AdminGovernanceService(store, cleaner)
    member = store.add_account(account_factory("Member"))

    with pytest.raises(StoreUnavailableError):
        service.delete_account(member.account_id)
    assert store.get_account(member.account_id) is None
    assert cleaner.purged == []

    with pytest.raises(NotFoundError):
        service.delete_account(member.account_id)
    assert cleaner.purged == [member.account_id]


def test_delete_drops_owned_jobs_and_settings_with_the_account(service, store, account_factory):
    member = store.add_account(account_factory("Member"))
    store.add_job(member.account_id, OwnedJob("job-1", "Acme", "Analyst", "applied", member.created_at))
    store.put_settings(member.account_id, {"theme": "dark"})

    service.delete_account(member.account_id)

    resources = store.owned_resources(member.account_id)
    assert resources.recent_jobs == []
    assert resources.settings is None


def test_account_details_include_recent_jobs_counts_and_settings(service, store, account_factory):
    member = store.add_account(account_factory("Member"))
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    statuses = ["applied", "applied", "interview", "offer"]
    for idx, job_status in enumerate(statuses):
        store.add_job(
            member.account_id,
            OwnedJob(f"job-{idx}", f"Company{idx}", "Engineer", job_status, base + timedelta(days=idx)),
        )
    store.put_settings(member.account_id, {"theme": "dark"})

    details = service.get_account_details(member.account_id, recent_jobs=3)

    assert details.account.account_id == member.account_id
    assert [job.job_id for job in details.resources.recent_jobs] == ["job-3", "job-2", "job-1"]
    assert details.resources.job_counts == {"applied": 2, "interview": 1, "offer": 1}
    assert details.resources.settings == {"theme": "dark"}

    with pytest.raises(NotFoundError):
        service.get_account_details("missing")
