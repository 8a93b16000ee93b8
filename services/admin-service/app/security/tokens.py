"""Verification of bearer tokens minted by the external auth service."""

from __future__ import annotations

from typing import Any

import jwt

from ..config import get_settings


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Parameters
    ----------
    token:
        Encoded JWT issued by the auth service.

    Returns
    -------
    dict[str, Any]
        The decoded payload if signature, expiry and issuer checks succeed.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, signed by another issuer,
        or lacks a ``sub`` claim.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub"]},
    )


def actor_from_authorization(header: str | None) -> str:
    """Return the account id of the caller from an ``Authorization`` header value."""
    if not header:
        raise jwt.InvalidTokenError("missing bearer token")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise jwt.InvalidTokenError("malformed authorization header")
    claims = decode_access_token(token.strip())
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise jwt.InvalidTokenError("token subject missing")
    return subject
