# FILE: nima/services/curation_service.py
"""
Save / discard / restore a generated look.

    current     save        discard      restore
    pending     saved       discarded    invalid
    saved       no-op       invalid      no-op
    discarded   invalid     no-op        saved

Nothing returns a look to pending. Discard always clears both visibility flags.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from nima.core.errors import InvalidTransition
from nima.models.base import utcnow
from nima.models.look import Look
from nima.schemas.looks import ActionResult
from nima.services import access_service

logger = logging.getLogger("nima.curation")

# (current, action) -> next; a missing pair is an invalid transition
TRANSITIONS = {
    ("pending", "save"): "saved",
    ("pending", "discard"): "discarded",
    ("saved", "save"): "saved",
    ("saved", "restore"): "saved",
    ("discarded", "discard"): "discarded",
    ("discarded", "restore"): "saved",
}


def next_state(current: str, action: str) -> str:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(f"Cannot {action} a {current} look")


async def _transition(db: AsyncSession, user: Optional[Dict[str, Any]], look_id: str, action: str) -> Look:
    actor_id = access_service.require_user(user)
    look = await access_service.load_look(db, look_id, for_update=True)
    access_service.authorize(actor_id, look, "curate")

    current = look.curation_status or "pending"
    target = next_state(current, action)

    changed = target != current
    look.curation_status = target
    if target == "discarded" and (look.is_public or look.shared_with_friends):
        look.is_public = False
        look.shared_with_friends = False
        changed = True

    if changed:
        look.updated_at = utcnow()
        await db.commit()
        logger.info("Look %s %s -> %s by %s", look.id, current, target, actor_id)
    return look


async def save_look(db: AsyncSession, user: Optional[Dict[str, Any]], look_id: str) -> ActionResult:
    await _transition(db, user, look_id, "save")
    return ActionResult(success=True)


async def discard_look(db: AsyncSession, user: Optional[Dict[str, Any]], look_id: str) -> ActionResult:
    await _transition(db, user, look_id, "discard")
    return ActionResult(success=True)


async def restore_look(db: AsyncSession, user: Optional[Dict[str, Any]], look_id: str) -> ActionResult:
    await _transition(db, user, look_id, "restore")
    return ActionResult(success=True)


async def update_look_visibility(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    look_id: str,
    is_public: bool,
    shared_with_friends: bool,
) -> Look:
    actor_id = access_service.require_user(user)
    look = await access_service.load_look(db, look_id, for_update=True)
    access_service.authorize(actor_id, look, "visibility")

    if look.curation_status == "discarded" and (is_public or shared_with_friends):
        raise InvalidTransition("Restore the look before sharing it")

    look.is_public = is_public
    look.shared_with_friends = shared_with_friends
    look.updated_at = utcnow()
    await db.commit()
    return look
