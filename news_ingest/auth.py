# news_ingest/auth.py
"""Shared authentication dependencies."""

import os
import secrets

from fastapi import Header, HTTPException


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_admin_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None),
) -> None:
    """
    Validate the operator API key (X-API-Key header or Authorization: Bearer).

    Fails closed if ADMIN_API_KEY is not set.
    """
    expected_key = os.getenv("ADMIN_API_KEY")

    if not expected_key:
        raise HTTPException(
            status_code=500,
            detail="Server misconfiguration: admin authentication not configured",
        )

    provided = x_api_key or _bearer_token(authorization)
    if not provided or not secrets.compare_digest(provided, expected_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
        )
