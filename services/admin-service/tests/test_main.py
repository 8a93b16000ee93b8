from __future__ import annotations

import pytest
from fastapi import FastAPI

from app.config import Settings
from app.main import _build_service


def test_unknown_store_backend_is_rejected():
    with pytest.raises(ValueError, match="mongo"):
        _build_service(FastAPI(), Settings(store_backend="mongo"))


def test_memory_backend_builds_a_working_service():
    service = _build_service(FastAPI(), Settings(store_backend="memory"))
    assert service.can_promote()
