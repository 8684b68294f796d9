"""Caller identity helpers for owner-scoped JWT auth."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tireplan.config import get_settings
from tireplan.core.exceptions import UnauthenticatedError

ALGORITHM = "HS256"
TOKEN_TTL_MINUTES = 60 * 12
AUTH_SCHEME = HTTPBearer(auto_error=False)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _secret_key() -> str:
    return get_settings().secret_key.get_secret_value()


def create_access_token(owner_id: str, extra: Dict[str, Any] | None = None) -> str:
    payload: Dict[str, Any] = {
        "sub": owner_id,
        "iat": int(now_utc().timestamp()),
        "exp": int((now_utc() + timedelta(minutes=TOKEN_TTL_MINUTES)).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, _secret_key(), algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, _secret_key(), algorithms=[ALGORITHM])


def get_current_owner(
    creds: HTTPAuthorizationCredentials | None = Depends(AUTH_SCHEME),
) -> str:
    """Resolve the owner id from the bearer token's subject."""
    if creds is None or not creds.credentials:
        raise UnauthenticatedError("User must be authenticated")
    try:
        payload = decode_token(creds.credentials)
    except jwt.PyJWTError:
        raise UnauthenticatedError("Invalid or expired token")

    owner_id = str(payload.get("sub", "")).strip()
    if not owner_id:
        raise UnauthenticatedError("Invalid token subject")
    return owner_id
