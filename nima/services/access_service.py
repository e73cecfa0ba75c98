# FILE: nima/services/access_service.py
"""Who may do what to a look. Every ownership check goes through here."""

from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core.errors import AuthenticationRequired, NotFound, Unauthorized
from nima.models.look import Look

# Actions only the creator may perform
OWNER_ACTIONS = {"curate", "retry", "visibility"}
# Actions also allowed on public looks
VIEW_ACTIONS = {"view", "recreate"}


def require_user(user: Optional[Dict[str, Any]]) -> str:
    if not user or not user.get("id"):
        raise AuthenticationRequired("Sign in to continue")
    return user["id"]


async def load_look(db: AsyncSession, look_id: str, for_update: bool = False) -> Look:
    """Fetch a look by id or public id. Raises NotFound."""
    stmt = (
        select(Look)
        .where(or_(Look.id == look_id, Look.public_id == look_id))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    look = (await db.execute(stmt)).scalar_one_or_none()
    if not look:
        raise NotFound("look")
    return look


def can(actor_id: Optional[str], look: Look, action: str) -> bool:
    if action not in OWNER_ACTIONS and action not in VIEW_ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    if not actor_id:
        return False
    is_owner = look.creator_user_id is not None and look.creator_user_id == actor_id
    if action in OWNER_ACTIONS:
        return is_owner
    return is_owner or bool(look.is_public)


def authorize(actor_id: Optional[str], look: Look, action: str) -> None:
    if not can(actor_id, look, action):
        raise Unauthorized(f"Not allowed to {action} this look")


def authorize_owner(actor_id: Optional[str], owner_id: Optional[str]) -> None:
    if not actor_id or actor_id != owner_id:
        raise Unauthorized("Not allowed to access this resource")
