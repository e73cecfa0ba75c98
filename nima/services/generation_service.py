# FILE: nima/services/generation_service.py
"""
Look generation worker.

Admission writes a GenerationTask row in the same transaction as the charge and
schedules run_generation_task after the response. The task row is the durable
record: recover_pending_tasks re-dispatches whatever a restart interrupted.

A task only writes results while its attempt is still the look's
generation_attempt. A retry bumps the attempt, so an older task that finishes
late is marked stale and leaves the look alone.

Single-item try-ons have no task table: the ItemTryOn row is its own queue
entry, claimed with pending -> processing under the same attempt guard.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from fastapi import BackgroundTasks
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core import config, database
from nima.core.errors import NotFound, ProviderFailure
from nima.models.base import new_id, utcnow
from nima.models.generation_task import GenerationTask
from nima.models.item import Item
from nima.models.item_try_on import ItemTryOn
from nima.models.look import Look
from nima.models.look_image import LookImage
from nima.models.user import User
from nima.schemas.looks import ActionResult
from nima.services import access_service, image_service, notification_service, storage_service

logger = logging.getLogger("nima.generation")

# Tasks dispatched outside a request (startup recovery)
_running: Set[asyncio.Task] = set()


def enqueue_generation(db: AsyncSession, look_id: str, user_id: str, attempt: int) -> str:
    """Add a queued task to the session. The caller commits and schedules it."""
    task_id = new_id()
    db.add(GenerationTask(
        id=task_id,
        look_id=look_id,
        user_id=user_id,
        attempt=attempt,
        status="queued",
    ))
    return task_id


async def _claim(db: AsyncSession, task_id: str) -> bool:
    result = await db.execute(
        update(GenerationTask)
        .where(GenerationTask.id == task_id, GenerationTask.status == "queued")
        .values(status="running", started_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _close_task(db: AsyncSession, task_id: str, status: str, error: Optional[str] = None) -> None:
    await db.execute(
        update(GenerationTask)
        .where(GenerationTask.id == task_id)
        .values(status=status, error_message=error, finished_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def _get_look_image(db: AsyncSession, look_id: str, user_id: str) -> Optional[LookImage]:
    return (
        await db.execute(
            select(LookImage)
            .where(LookImage.look_id == look_id, LookImage.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _upsert_look_image(db: AsyncSession, look_id: str, user_id: str, **values) -> LookImage:
    image = await _get_look_image(db, look_id, user_id)
    if image is None:
        image = LookImage(id=new_id(), look_id=look_id, user_id=user_id)
        db.add(image)
    for key, value in values.items():
        setattr(image, key, value)
    image.updated_at = utcnow()
    return image


async def _set_look_status(db: AsyncSession, look_id: str, attempt: int, status: str) -> bool:
    """Compare-and-swap on the attempt. False means a retry superseded this task."""
    result = await db.execute(
        update(Look)
        .where(Look.id == look_id, Look.generation_attempt == attempt)
        .values(generation_status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _item_refs(db: AsyncSession, item_ids: List[str]) -> List[Dict[str, Any]]:
    rows = await db.execute(select(Item).where(Item.id.in_(item_ids)))
    by_id = {item.id: item for item in rows.scalars().all()}
    refs = []
    for item_id in item_ids:
        item = by_id.get(item_id)
        if not item or not item.image_url:
            raise ProviderFailure(f"Item {item_id} has no image")
        description = " ".join(p for p in (item.brand, item.name) if p)
        refs.append({"image_url": item.image_url, "description": description})
    return refs


async def run_generation_task(task_id: str) -> None:
    """Background entry point. Never raises: failures are recorded on the look."""
    async with database.SessionLocal() as db:
        if not await _claim(db, task_id):
            logger.info("Generation task %s already claimed or finished, skipping", task_id)
            return

        task = await db.get(GenerationTask, task_id)
        look_id, user_id, attempt = task.look_id, task.user_id, task.attempt

        look = await db.get(Look, look_id)
        if look is None:
            await _close_task(db, task_id, "failed", "Look not found")
            await db.commit()
            logger.warning("Generation task %s: look %s not found", task_id, look_id)
            return

        look_name = look.name
        created_by = look.created_by
        item_ids = list(look.item_ids or [])

        if not await _set_look_status(db, look_id, attempt, "processing"):
            await _close_task(db, task_id, "stale")
            await db.commit()
            logger.info("Generation task %s is stale (attempt %s), skipping", task_id, attempt)
            return
        await _upsert_look_image(db, look_id, user_id, status="processing", error_message=None)
        await db.commit()

        provider = image_service.get_image_provider()
        try:
            user = await db.get(User, user_id)
            if not user:
                raise NotFound("user")
            if not user.primary_photo_url:
                raise ProviderFailure("No profile photo to render the look on")
            refs = await _item_refs(db, item_ids)

            logger.info("Generating look %s for user %s (attempt %s)", look_id, user_id, attempt)
            png = await provider.generate(user.primary_photo_url, refs)
            storage_ref = await asyncio.to_thread(storage_service.save_image, png)
        except Exception as exc:
            await db.rollback()
            error = getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__
            logger.error("Generation failed for look %s: %s", look_id, error)
            await _finish(db, task_id, look_id, user_id, attempt, error=error)
            return

        done = await _finish(
            db, task_id, look_id, user_id, attempt,
            storage_ref=storage_ref, provider_name=provider.name,
        )
        if done and created_by == "user":
            await notification_service.send_notification(
                user_id, "look_ready", {"look_id": look_id, "look_name": look_name}
            )


async def _finish(
    db: AsyncSession,
    task_id: str,
    look_id: str,
    user_id: str,
    attempt: int,
    storage_ref: Optional[str] = None,
    provider_name: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    status = "failed" if error else "completed"
    if not await _set_look_status(db, look_id, attempt, status):
        await db.rollback()
        await _close_task(db, task_id, "stale", error)
        await db.commit()
        logger.info("Look %s was retried while task %s ran, result dropped", look_id, task_id)
        return False

    if error:
        await _upsert_look_image(db, look_id, user_id, status="failed", error_message=error)
        await _close_task(db, task_id, "failed", error)
    else:
        now = utcnow()
        await _upsert_look_image(
            db, look_id, user_id,
            status="completed",
            storage_ref=storage_ref,
            generation_provider=provider_name,
            error_message=None,
            expires_at=now + timedelta(days=config.LOOK_IMAGE_TTL_DAYS),
        )
        await _close_task(db, task_id, "done")
    await db.commit()
    logger.info("Look %s generation %s", look_id, status)
    return not error


async def retry_look_generation(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    look_id: str,
    background_tasks: BackgroundTasks,
) -> ActionResult:
    """Re-run generation for the creator. No credit is charged."""
    actor_id = access_service.require_user(user)
    look = await access_service.load_look(db, look_id)
    access_service.authorize(actor_id, look, "retry")
    look_id = look.id

    await db.execute(
        update(Look)
        .where(Look.id == look_id)
        .values(
            generation_attempt=Look.generation_attempt + 1,
            generation_status="pending",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    attempt = (await db.execute(select(Look.generation_attempt).where(Look.id == look_id))).scalar_one()

    image = await _get_look_image(db, look_id, actor_id)
    if image is not None:
        image.status = "pending"
        image.error_message = None
        image.updated_at = utcnow()

    # Older queued tasks would only be dropped as stale when they run
    await db.execute(
        update(GenerationTask)
        .where(GenerationTask.look_id == look_id, GenerationTask.status == "queued")
        .values(status="stale", finished_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    task_id = enqueue_generation(db, look_id, actor_id, attempt)
    await db.commit()

    logger.info("Retrying generation for look %s (attempt %s)", look_id, attempt)
    background_tasks.add_task(run_generation_task, task_id)
    return ActionResult(success=True)


async def _set_try_on_status(db: AsyncSession, try_on_id: str, attempt: int, current: str, **values) -> bool:
    """Compare-and-swap on (status, attempt). False means another worker or a retry got there first."""
    result = await db.execute(
        update(ItemTryOn)
        .where(ItemTryOn.id == try_on_id, ItemTryOn.attempt == attempt, ItemTryOn.status == current)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def run_try_on_task(try_on_id: str, attempt: int) -> None:
    """Background entry point for a single-item try-on. Never raises."""
    async with database.SessionLocal() as db:
        claimed = await _set_try_on_status(db, try_on_id, attempt, "pending", status="processing")
        await db.commit()
        if not claimed:
            logger.info("Try-on %s attempt %s already claimed or superseded, skipping", try_on_id, attempt)
            return

        try_on = await db.get(ItemTryOn, try_on_id)
        item_id, user_id, color = try_on.item_id, try_on.user_id, try_on.selected_color
        item_name = None

        provider = image_service.get_image_provider()
        try:
            user = await db.get(User, user_id)
            if not user:
                raise NotFound("user")
            if not user.primary_photo_url:
                raise ProviderFailure("No profile photo to render the item on")
            item = await db.get(Item, item_id)
            item_name = item.name if item else None
            refs = await _item_refs(db, [item_id])
            if color:
                refs[0]["description"] = f"{color} {refs[0]['description']}"

            logger.info("Generating try-on %s of item %s for user %s", try_on_id, item_id, user_id)
            png = await provider.generate(user.primary_photo_url, refs)
            storage_ref = await asyncio.to_thread(storage_service.save_image, png, "try-ons")
        except Exception as exc:
            await db.rollback()
            error = getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__
            logger.error("Try-on %s failed: %s", try_on_id, error)
            await _set_try_on_status(db, try_on_id, attempt, "processing", status="failed", error_message=error)
            await db.commit()
            return

        done = await _set_try_on_status(
            db, try_on_id, attempt, "processing",
            status="completed",
            storage_ref=storage_ref,
            generation_provider=provider.name,
            error_message=None,
            expires_at=utcnow() + timedelta(days=config.LOOK_IMAGE_TTL_DAYS),
        )
        await db.commit()
        if not done:
            logger.info("Try-on %s attempt %s superseded, result dropped", try_on_id, attempt)
            return

        await notification_service.send_notification(
            user_id, "tryon_ready", {"try_on_id": try_on_id, "item_name": item_name}
        )


async def recover_pending_tasks() -> int:
    """
    Startup: re-dispatch tasks and try-ons a previous process left unfinished.
    Assumes a single worker process owns the queue.
    """
    async with database.SessionLocal() as db:
        await db.execute(
            update(GenerationTask)
            .where(GenerationTask.status == "running")
            .values(status="queued")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        rows = await db.execute(
            select(GenerationTask.id)
            .where(GenerationTask.status == "queued")
            .order_by(GenerationTask.created_at)
        )
        task_ids = list(rows.scalars().all())

        await db.execute(
            update(ItemTryOn)
            .where(ItemTryOn.status == "processing")
            .values(status="pending")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        rows = await db.execute(
            select(ItemTryOn.id, ItemTryOn.attempt)
            .where(ItemTryOn.status == "pending")
            .order_by(ItemTryOn.updated_at)
        )
        try_ons = [(row.id, row.attempt) for row in rows]

    coros = [run_generation_task(task_id) for task_id in task_ids]
    coros += [run_try_on_task(try_on_id, attempt) for try_on_id, attempt in try_ons]
    for coro in coros:
        t = asyncio.create_task(coro)
        _running.add(t)
        t.add_done_callback(_running.discard)

    if coros:
        logger.info("Recovered %s generation task(s) and %s try-on(s)", len(task_ids), len(try_ons))
    return len(coros)
