"""Error kinds raised by the admin governance workflows."""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for recoverable, caller-facing governance failures."""


class NotFoundError(GovernanceError):
    """The target account does not exist."""


class ConflictError(GovernanceError):
    """Applying the operation would break the single-admin invariant."""


class PreconditionError(GovernanceError):
    """The operation does not apply to the account's current state."""


class StoreUnavailableError(GovernanceError):
    """The backing account store could not be reached."""
