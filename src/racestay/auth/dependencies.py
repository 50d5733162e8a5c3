"""Caller identity for HTTP routes.

Routers only learn *who* is calling. Whether that user may touch a booking,
message or notification is decided in the services against the row's
``guest_id``/``host_id``/``sender_id``/``user_id``.
"""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.jwt import verify_token
from racestay.database import get_session
from racestay.db.models import User
from racestay.errors import UnauthorizedError

_bearer = HTTPBearer(description="RS256 access token; `sub` is the user id")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    try:
        claims = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"}) from e

    user = await db.get(User, claims.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    if user.is_banned:
        raise UnauthorizedError("Account is suspended", user_id=user.id)
    return user
