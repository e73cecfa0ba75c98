# FILE: nima/services/look_service.py
"""
Look admission: every path that creates a look and queues its generation.

Checks run in a fixed order and a rejected request never consumes a credit:
authentication, item count, hourly rate limit, catalog items, then the charge.
The charge, the look row and its generation task commit together.

Single-item try-ons skip the item-count bound and the rate limit. An existing
try-on is returned as is unless it failed; only a new or retried one is charged.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core import config
from nima.core.errors import ItemsUnavailable, NimaError, NotFound, RateLimited, ValidationError, result_code
from nima.models.base import generate_public_id, new_id, utcnow
from nima.models.item import Item
from nima.models.item_try_on import ItemTryOn
from nima.models.look import Look
from nima.models.look_image import LookImage
from nima.models.user import User
from nima.schemas.looks import CreateLookResult, GenerationStatus, TryOnResult, TryOnStatus
from nima.services import access_service, credit_service, generation_service, storage_service

logger = logging.getLogger("nima.looks")


def check_item_count(item_ids: List[str]) -> None:
    if len(item_ids) < config.MIN_LOOK_ITEMS or len(item_ids) > config.MAX_LOOK_ITEMS:
        raise ValidationError(
            "item_count",
            f"Select between {config.MIN_LOOK_ITEMS} and {config.MAX_LOOK_ITEMS} items",
        )


async def count_recent_looks(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> int:
    """User-created looks by this creator inside the trailing rate window."""
    since = (now or utcnow()) - config.LOOK_RATE_WINDOW
    result = await db.execute(
        select(func.count())
        .select_from(Look)
        .where(
            Look.creator_user_id == user_id,
            Look.created_by == "user",
            Look.created_at > since,
        )
    )
    return int(result.scalar_one())


async def check_rate_limit(db: AsyncSession, user_id: str) -> None:
    if await count_recent_looks(db, user_id) >= config.LOOK_RATE_LIMIT:
        raise RateLimited(f"Limit of {config.LOOK_RATE_LIMIT} looks per hour reached")


async def load_items(db: AsyncSession, item_ids: List[str]) -> List[Item]:
    """Items in request order. Raises ItemsUnavailable if any is missing or inactive."""
    rows = await db.execute(select(Item).where(Item.id.in_(item_ids)))
    by_id = {item.id: item for item in rows.scalars().all()}
    missing = [i for i in item_ids if i not in by_id or not by_id[i].is_active]
    if missing:
        raise ItemsUnavailable(f"Items unavailable: {', '.join(missing)}")
    return [by_id[i] for i in item_ids]


def summarize_items(items: List[Item]) -> Dict[str, Any]:
    """Total price, currency of the last item, and up to MAX_STYLE_TAGS distinct tags."""
    tags: List[str] = []
    for item in items:
        for tag in item.tags or []:
            if tag not in tags:
                tags.append(tag)
    currency = config.DEFAULT_CURRENCY
    for item in items:
        currency = item.currency or currency
    return {
        "total_price": sum(item.price or 0 for item in items),
        "currency": currency,
        "style_tags": tags[: config.MAX_STYLE_TAGS],
    }


async def _admit(
    db: AsyncSession,
    user_id: str,
    item_ids: List[str],
    background_tasks: BackgroundTasks,
    *,
    summary: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    occasion: Optional[str] = None,
    creation_source: str = "apparel",
    original_look_id: Optional[str] = None,
    created_by: str = "user",
    check_count: bool = True,
) -> CreateLookResult:
    charge = created_by == "user"

    if check_count:
        check_item_count(item_ids)
    if charge:
        await check_rate_limit(db, user_id)
    items = await load_items(db, item_ids)
    if summary is None:
        summary = summarize_items(items)

    # Plain values only from here: a ledger retry rolls the session back
    if charge:
        await credit_service.deduct(db, user_id, background_tasks, count=1, commit=False)

    look = Look(
        id=new_id(),
        public_id=generate_public_id("look"),
        item_ids=list(item_ids),
        total_price=summary["total_price"],
        currency=summary["currency"],
        style_tags=summary["style_tags"],
        name=name,
        occasion=occasion,
        generation_status="pending",
        generation_attempt=1,
        curation_status="pending",
        created_by=created_by,
        creator_user_id=user_id,
        creation_source=creation_source,
        original_look_id=original_look_id,
        is_public=False,
        shared_with_friends=False,
        is_active=True,
    )
    db.add(look)
    task_id = generation_service.enqueue_generation(db, look.id, user_id, attempt=1)
    await db.commit()

    logger.info("Look %s created by %s (%s), task %s queued", look.public_id, user_id, creation_source, task_id)
    background_tasks.add_task(generation_service.run_generation_task, task_id)
    return CreateLookResult(success=True, look_id=look.id, public_id=look.public_id)


def _rejected(exc: NimaError, user_id: Optional[str]) -> CreateLookResult:
    logger.info("Look creation rejected for %s: %s", user_id, exc.detail)
    return CreateLookResult(success=False, error=result_code(exc))


async def create_look_from_selected_items(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    item_ids: List[str],
    occasion: Optional[str],
    background_tasks: BackgroundTasks,
) -> CreateLookResult:
    user_id = user.get("id") if user else None
    try:
        user_id = access_service.require_user(user)
        return await _admit(
            db, user_id, list(item_ids or []), background_tasks,
            name=f"{occasion} Look" if occasion else "Custom Look",
            occasion=occasion,
        )
    except NimaError as exc:
        return _rejected(exc, user_id)


async def create_look_for_chat(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    item_ids: List[str],
    background_tasks: BackgroundTasks,
    occasion: Optional[str] = None,
    name: Optional[str] = None,
) -> CreateLookResult:
    user_id = user.get("id") if user else None
    try:
        user_id = access_service.require_user(user)
        return await _admit(
            db, user_id, list(item_ids or []), background_tasks,
            name=name or "Chat Look",
            occasion=occasion,
            creation_source="chat",
        )
    except NimaError as exc:
        return _rejected(exc, user_id)


async def recreate_look(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    look_id: str,
    background_tasks: BackgroundTasks,
) -> CreateLookResult:
    """Charge for a fresh copy of an existing look, rendered on the caller."""
    user_id = user.get("id") if user else None
    try:
        user_id = access_service.require_user(user)
        source = await access_service.load_look(db, look_id)
        if not source.is_active:
            raise NotFound("look")
        access_service.authorize(user_id, source, "recreate")

        summary = {
            "total_price": source.total_price,
            "currency": source.currency,
            "style_tags": list(source.style_tags or []),
        }
        return await _admit(
            db, user_id, list(source.item_ids or []), background_tasks,
            summary=summary,
            name=f"{source.name or 'Look'} (Recreated)",
            occasion=source.occasion,
            creation_source="recreated",
            original_look_id=source.id,
            check_count=False,
        )
    except NimaError as exc:
        return _rejected(exc, user_id)


async def create_system_look(
    db: AsyncSession,
    user_id: str,
    item_ids: List[str],
    background_tasks: BackgroundTasks,
    name: Optional[str] = None,
    occasion: Optional[str] = None,
) -> CreateLookResult:
    """Onboarding looks: generated for the user but not charged or rate limited."""
    try:
        return await _admit(
            db, user_id, list(item_ids or []), background_tasks,
            name=name,
            occasion=occasion,
            creation_source="onboarding",
            created_by="system",
        )
    except NimaError as exc:
        return _rejected(exc, user_id)


async def get_generation_status(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    look_id: str,
) -> GenerationStatus:
    actor_id = access_service.require_user(user)
    look = await access_service.load_look(db, look_id)
    access_service.authorize(actor_id, look, "view")

    image = (
        await db.execute(
            select(LookImage).where(LookImage.look_id == look.id, LookImage.user_id == actor_id)
        )
    ).scalar_one_or_none()
    if image is not None:
        return GenerationStatus(
            status=image.status,
            error_message=image.error_message,
            image_url=storage_service.resolve_url(image.storage_ref) if image.status == "completed" else None,
        )
    return GenerationStatus(status=look.generation_status)


async def _get_try_on(db: AsyncSession, item_id: str, user_id: str) -> Optional[ItemTryOn]:
    return (
        await db.execute(
            select(ItemTryOn)
            .where(ItemTryOn.item_id == item_id, ItemTryOn.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def try_on_item(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    item_id: str,
    background_tasks: BackgroundTasks,
    selected_size: Optional[str] = None,
    selected_color: Optional[str] = None,
) -> TryOnResult:
    """Render one catalog item on the caller's photo."""
    user_id = user.get("id") if user else None
    try:
        user_id = access_service.require_user(user)
        await load_items(db, [item_id])
        account = await db.get(User, user_id)
        if account is None:
            raise NotFound("user")
        if not account.primary_photo_url:
            raise ValidationError("photo", "Upload a photo first to try on items")

        existing = await _get_try_on(db, item_id, user_id)
        if existing is not None and existing.status != "failed":
            return TryOnResult(success=True, try_on_id=existing.id)

        # Plain values only from here: a ledger retry rolls the session back
        existing_id = existing.id if existing else None
        existing_attempt = existing.attempt if existing else 0

        await credit_service.deduct(db, user_id, background_tasks, count=1, commit=False)

        attempt = existing_attempt + 1
        if existing_id is None:
            try_on_id = new_id()
            db.add(ItemTryOn(
                id=try_on_id,
                item_id=item_id,
                user_id=user_id,
                selected_size=selected_size,
                selected_color=selected_color,
                status="pending",
                attempt=attempt,
            ))
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent request created it first; the rollback undoes our charge
                await db.rollback()
                winner = await _get_try_on(db, item_id, user_id)
                return TryOnResult(success=True, try_on_id=winner.id)
        else:
            try_on_id = existing_id
            reset = await db.execute(
                update(ItemTryOn)
                .where(
                    ItemTryOn.id == try_on_id,
                    ItemTryOn.status == "failed",
                    ItemTryOn.attempt == existing_attempt,
                )
                .values(
                    status="pending",
                    attempt=attempt,
                    error_message=None,
                    selected_size=selected_size,
                    selected_color=selected_color,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if reset.rowcount == 0:
                await db.rollback()
                return TryOnResult(success=True, try_on_id=try_on_id)
            await db.commit()
    except NimaError as exc:
        logger.info("Try-on rejected for %s: %s", user_id, exc.detail)
        return TryOnResult(success=False, error=result_code(exc))

    logger.info("Try-on %s of item %s for %s queued (attempt %s)", try_on_id, item_id, user_id, attempt)
    background_tasks.add_task(generation_service.run_try_on_task, try_on_id, attempt)
    return TryOnResult(success=True, try_on_id=try_on_id)


async def get_try_on_status(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    item_id: str,
) -> TryOnStatus:
    user_id = access_service.require_user(user)
    try_on = await _get_try_on(db, item_id, user_id)
    if try_on is None:
        raise NotFound("try-on")
    return TryOnStatus(
        try_on_id=try_on.id,
        item_id=try_on.item_id,
        status=try_on.status,
        error_message=try_on.error_message,
        image_url=storage_service.resolve_url(try_on.storage_ref) if try_on.status == "completed" else None,
    )
