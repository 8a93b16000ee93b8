from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app.config import get_settings
from app.domain.account import Account, Role
from app.domain.service import AdminGovernanceService
from app.memory_repository import InMemoryAccountRepository


class RecordingCleaner:
    """Owned-resource cleaner that remembers which accounts it purged."""

    def __init__(self) -> None:
        self.purged: list[str] = []

    def purge_owned_resources(self, account_id: str) -> None:
        self.purged.append(account_id)


_created_offset = 0


def make_account(
    name: str,
    *,
    role: Role = Role.standard,
    active: bool = True,
) -> Account:
    global _created_offset
    _created_offset += 1
    return Account(
        account_id=str(uuid.uuid4()),
        email=f"{name.lower()}@example.com",
        name=name,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=_created_offset),
        role=role,
        active=active,
    )


def bearer(account_id: str, *, secret: str | None = None, expires_in: int = 300) -> dict[str, str]:
    """Authorization header carrying a token as the external auth service would mint it."""
    settings = get_settings()
    now = int(time.time())
    token = jwt.encode(
        {"iss": settings.jwt_issuer, "sub": account_id, "iat": now, "exp": now + expires_in},
        secret or settings.jwt_secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def store() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def cleaner() -> RecordingCleaner:
    return RecordingCleaner()


@pytest.fixture
def service(store, cleaner) -> AdminGovernanceService:
    return AdminGovernanceService(store, cleaner)


@pytest.fixture
def account_factory():
    return make_account


@pytest.fixture
def auth_header():
    return bearer
