from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from typing import AsyncGenerator, Optional

from ..enums import UserRole
from ..exceptions import AccessTokenRequiredException, PermissionRequiredException
from ..db.database import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Asynchronous dependency that provides a database session for FastAPI routes.

    Yields:
        AsyncSession: An instance of the asynchronous database session.

    Usage:
        Use as a dependency in FastAPI endpoints to access the database session.
        The session is automatically closed after the request is processed.
    """

    async with AsyncSessionLocal() as db:
        yield db


async def get_optional_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """
    Caller identity forwarded by the authentication gateway.

    Returns None for anonymous requests.
    """
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


async def get_current_user_id(user_id: Optional[str] = Depends(get_optional_user_id)) -> str:
    if user_id is None:
        raise AccessTokenRequiredException()
    return user_id


async def get_current_admin(
    user_id: str = Depends(get_current_user_id),
    x_user_role: Optional[str] = Header(None),
) -> str:
    if (x_user_role or "").strip().lower() != UserRole.ADMIN.value:
        raise PermissionRequiredException("Only admins can access this resource!")

    return user_id
