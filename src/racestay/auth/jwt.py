"""RS256 access tokens.

Tokens are issued by the identity provider; the API only verifies them and
reads the caller's user id from ``sub``. :func:`create_access_token` exists
for service-to-service calls and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

import jwt

from racestay.config import get_settings

ACCESS = "access"


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    expires_at: datetime
    email: str | None = None


@lru_cache(maxsize=1)
def _keys() -> tuple[str, str]:
    settings = get_settings()
    return (
        Path(settings.jwt_private_key_path).read_text(),
        Path(settings.jwt_public_key_path).read_text(),
    )


def reset_keys() -> None:
    """Forget the cached key pair (tests rotate keys between runs)."""
    _keys.cache_clear()


def create_access_token(user_id: int, email: str | None = None, *, ttl: timedelta | None = None) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    ttl = ttl if ttl is not None else timedelta(minutes=settings.jwt_access_token_expire_minutes)
    claims: dict[str, object] = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + ttl,
        "iss": settings.jwt_issuer,
        "type": ACCESS,
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, _keys()[0], algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> AccessClaims:
    """Decode an access token.

    Raises:
        jwt.InvalidTokenError: bad signature, wrong issuer, expired, wrong
            type or a ``sub`` that is not a user id.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            _keys()[1],
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired") from None

    if payload.get("type") != ACCESS:
        raise jwt.InvalidTokenError(f"Expected an access token, got {payload.get('type')!r}")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError("Token subject is not a user id") from None

    return AccessClaims(
        user_id=user_id,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        email=payload.get("email"),
    )
