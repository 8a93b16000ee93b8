"""Guard decisions for the single-admin governance invariant.

Once an active admin exists, no mutation may take the active-admin count below
one. Stores call these functions inside their atomic section, passing the target
account and the admin counts read at the same instant the mutation is applied.
"""

from __future__ import annotations

from .account import Account
from .contracts import AdminCounts, GuardOutcome


def can_promote(counts: AdminCounts) -> bool:
    """Promotion is only open while no active admin exists."""
    return counts.active == 0


def check_promote(target: Account | None, counts: AdminCounts) -> GuardOutcome:
    if not can_promote(counts):
        return GuardOutcome.admin_exists
    if target is None:
        return GuardOutcome.not_found
    if target.is_admin:
        return GuardOutcome.already_admin
    if not target.active:
        return GuardOutcome.inactive
    return GuardOutcome.applied


def check_demote(target: Account | None, counts: AdminCounts) -> GuardOutcome:
    if target is None:
        return GuardOutcome.not_found
    if not target.is_admin:
        return GuardOutcome.not_admin
    if counts.active <= 1:
        return GuardOutcome.last_admin
    return GuardOutcome.applied


def check_set_active(target: Account | None, counts: AdminCounts, active: bool) -> GuardOutcome:
    if target is None:
        return GuardOutcome.not_found
    if target.is_active_admin and not active and counts.active <= 1:
        return GuardOutcome.last_admin
    return GuardOutcome.applied


def check_delete(target: Account | None, counts: AdminCounts) -> GuardOutcome:
    if target is None:
        return GuardOutcome.not_found
    if target.is_admin:
        if counts.total <= 1:
            return GuardOutcome.last_admin
        # an inactive admin never holds up the active count
        if target.active and counts.active <= 1:
            return GuardOutcome.last_admin
    return GuardOutcome.applied
