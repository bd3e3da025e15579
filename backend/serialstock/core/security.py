"""SerialStock — JWT access tokens (verification, plus minting for dev and tests)."""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from serialstock.config import get_settings

settings = get_settings()


def create_access_token(subject: str | Any, tenant_id: str, extra_claims: dict | None = None, email: str | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_TTL_MINUTES)
    payload = {
        "sub": str(subject),
        "tenant_id": str(tenant_id),
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if email:
        payload["email"] = email
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
