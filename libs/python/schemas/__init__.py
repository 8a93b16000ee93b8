"""Shared schema exports."""

from .account import AccountRole, AccountSummary
from .envelope import ApiEnvelope

__all__ = [
    "AccountRole",
    "AccountSummary",
    "ApiEnvelope",
]
