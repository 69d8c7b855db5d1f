"""
Authentication dependencies for FastAPI routes.

Session handling lives in middleware outside this package; it stores the
authenticated user's id on ``request.state.user_id``.
"""

from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import get_db_session
from oldmanfooty.services import user_service


def get_current_user_id_optional(request: Request) -> Optional[int]:
    """The acting user's id, or None for anonymous requests."""
    return getattr(request.state, "user_id", None)


def get_current_user_id(user_id: Optional[int] = Depends(get_current_user_id_optional)) -> int:
    """
    Dependency returning the acting user's id.

    Raises:
        HTTPException: 401 when the request is not authenticated
    """
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


async def require_admin(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> int:
    """
    Dependency that only lets administrators through.

    Raises:
        HTTPException: 403 for non-admin or inactive users
    """
    user = await user_service.get_user(session, user_id)
    if user is None or not user.is_active or not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return user_id
