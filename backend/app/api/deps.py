"""Shared request dependencies."""

from typing import Annotated

from fastapi import Depends, Header

from app.errors import AuthError
from app.models import CurrentUser
from app.services.rate_limiter import RateLimiter


async def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_name: Annotated[str | None, Header()] = None,
) -> CurrentUser:
    """Identity forwarded by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise AuthError("Missing X-User-Id header")
    return CurrentUser(id=x_user_id.strip(), email=x_user_email, name=x_user_name)


UserDep = Annotated[CurrentUser, Depends(get_current_user)]


def rate_limited(endpoint: str):
    """Dependency that counts one request against the caller's window."""

    async def check(user: UserDep) -> CurrentUser:
        await RateLimiter().check(user.id, endpoint)
        return user

    return check
