"""Authentication dependencies: Jellyfin token validation and admin checks."""

import logging
from typing import Optional
from dataclasses import dataclass

from fastapi import Header, HTTPException, Depends

from app.clients.jellyfin import jellyfin_client

logger = logging.getLogger(__name__)


@dataclass
class Requester:
    """Authenticated user making a request."""
    user_id: str
    username: str
    is_admin: bool


async def get_current_user(
    x_jellyfin_token: Optional[str] = Header(None, alias="X-Jellyfin-Token"),
) -> Optional[Requester]:
    """
    Dependency to get current user from the X-Jellyfin-Token header.

    Returns None if no token provided (anonymous access).
    Raises 401 if token is invalid.
    """
    if not x_jellyfin_token:
        return None

    jellyfin_user = await jellyfin_client.validate_token(x_jellyfin_token)
    if not jellyfin_user:
        raise HTTPException(
            status_code=401,
            detail="Invalid Jellyfin token"
        )

    return Requester(
        user_id=jellyfin_user.user_id,
        username=jellyfin_user.username,
        is_admin=jellyfin_user.is_admin
    )


async def require_authenticated_user(
    user: Optional[Requester] = Depends(get_current_user)
) -> Requester:
    """
    Dependency that requires authentication.

    Raises 401 if not authenticated.

    Usage:
        @router.post("/requests")
        async def create(user: Requester = Depends(require_authenticated_user)):
            ...
    """
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide X-Jellyfin-Token header."
        )
    return user


async def require_admin_user(
    user: Requester = Depends(require_authenticated_user)
) -> Requester:
    """
    Dependency that requires admin privileges.

    Raises 401 if not authenticated, 403 if not admin.
    """
    if not user.is_admin:
        logger.warning(f"Non-admin user {user.username} ({user.user_id}) attempted admin action")
        raise HTTPException(
            status_code=403,
            detail="Admin privileges required"
        )
    return user

