"""Uniform response envelope returned by every HTTP endpoint."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ApiEnvelope(BaseModel):
    success: bool
    message: str = ""
    data: dict[str, Any] | None = None
