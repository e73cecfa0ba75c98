import asyncio

import pytest
from fastapi import BackgroundTasks
from sqlalchemy import select

from nima.core.errors import Unauthorized
from nima.models.generation_task import GenerationTask
from nima.models.look import Look
from nima.models.look_image import LookImage
from nima.services import credit_service, generation_service, look_service

from conftest import as_user


async def _admit(db, user, make_item, **kw):
    items = [await make_item(name="Denim Jacket"), await make_item(name="Chinos")]
    bg = BackgroundTasks()
    if kw.get("system"):
        result = await look_service.create_system_look(db, user.id, [i.id for i in items], bg)
    else:
        result = await look_service.create_look_from_selected_items(db, as_user(user), [i.id for i in items], None, bg)
    assert result.success
    task_id = next(t.args[0] for t in bg.tasks if t.func is generation_service.run_generation_task)
    return result.look_id, task_id


async def _state(session_factory, look_id, user_id):
    async with session_factory() as s:
        look = await s.get(Look, look_id)
        image = (
            await s.execute(select(LookImage).where(LookImage.look_id == look_id, LookImage.user_id == user_id))
        ).scalar_one_or_none()
        return look, image


async def test_successful_generation(db, session_factory, make_user, make_item, provider, notifications, media_dir):
    user = await make_user()
    look_id, task_id = await _admit(db, user, make_item)

    await generation_service.run_generation_task(task_id)

    look, image = await _state(session_factory, look_id, user.id)
    assert look.generation_status == "completed"
    assert image.status == "completed" and image.error_message is None
    assert image.generation_provider == "fake-provider"
    assert image.expires_at is not None
    assert (media_dir / image.storage_ref).read_bytes() == b"\x89PNG fake image"

    photo, refs = provider.calls[0]
    assert photo == user.primary_photo_url
    assert [r["description"] for r in refs] == ["Kiko Denim Jacket", "Kiko Chinos"]

    assert [(n[0], n[1]) for n in notifications] == [(user.id, "look_ready")]
    async with session_factory() as s:
        assert (await s.get(GenerationTask, task_id)).status == "done"


async def test_system_look_does_not_notify(db, make_user, make_item, provider, notifications):
    user = await make_user()
    _, task_id = await _admit(db, user, make_item, system=True)
    await generation_service.run_generation_task(task_id)
    assert notifications == []


async def test_provider_failure_is_recorded(db, session_factory, make_user, make_item, provider, notifications):
    provider.error = "Model refused the request"
    user = await make_user()
    look_id, task_id = await _admit(db, user, make_item)

    await generation_service.run_generation_task(task_id)

    look, image = await _state(session_factory, look_id, user.id)
    assert look.generation_status == "failed"
    assert (image.status, image.error_message) == ("failed", "Model refused the request")
    assert notifications == []


async def test_missing_photo_fails_generation(db, session_factory, make_user, make_item, provider):
    user = await make_user(primary_photo_url=None)
    look_id, task_id = await _admit(db, user, make_item)

    await generation_service.run_generation_task(task_id)

    look, image = await _state(session_factory, look_id, user.id)
    assert look.generation_status == "failed"
    assert image.status == "failed"
    assert provider.calls == []


async def test_task_runs_once(db, make_user, make_item, provider, notifications):
    user = await make_user()
    _, task_id = await _admit(db, user, make_item)

    await generation_service.run_generation_task(task_id)
    await generation_service.run_generation_task(task_id)
    assert len(provider.calls) == 1


async def test_retry_resets_and_requeues(db, session_factory, make_user, make_item, provider, notifications):
    provider.error = "Timeout"
    user = await make_user()
    look_id, task_id = await _admit(db, user, make_item)
    await generation_service.run_generation_task(task_id)

    bg = BackgroundTasks()
    async with session_factory() as s:
        result = await generation_service.retry_look_generation(s, as_user(user), look_id, bg)
    assert result.success

    look, image = await _state(session_factory, look_id, user.id)
    assert (look.generation_status, look.generation_attempt) == ("pending", 2)
    assert (image.status, image.error_message) == ("pending", None)

    provider.error = None
    await bg()
    look, image = await _state(session_factory, look_id, user.id)
    assert look.generation_status == "completed"
    assert image.status == "completed"


async def test_retry_is_free(db, session_factory, make_user, make_item, provider, notifications):
    user = await make_user()
    look_id, task_id = await _admit(db, user, make_item)
    await generation_service.run_generation_task(task_id)

    async with session_factory() as s:
        await generation_service.retry_look_generation(s, as_user(user), look_id, BackgroundTasks())
        balance = await credit_service.get_balance(s, user.id)
    assert balance.free_remaining == 4


async def test_retry_by_non_creator_changes_nothing(db, session_factory, make_user, make_item, provider):
    owner = await make_user()
    other = await make_user()
    look_id, _ = await _admit(db, owner, make_item)

    async with session_factory() as s:
        with pytest.raises(Unauthorized):
            await generation_service.retry_look_generation(s, as_user(other), look_id, BackgroundTasks())

    look, _ = await _state(session_factory, look_id, owner.id)
    assert look.generation_attempt == 1


async def test_stale_attempt_does_not_overwrite_retry(db, session_factory, make_user, make_item, provider, notifications):
    user = await make_user()
    look_id, first_task = await _admit(db, user, make_item)

    gate = asyncio.Event()
    started = asyncio.Event()
    original = provider.generate

    async def slow_generate(photo, refs):
        started.set()
        await gate.wait()
        return await original(photo, refs)

    provider.generate = slow_generate
    running = asyncio.create_task(generation_service.run_generation_task(first_task))
    await started.wait()

    bg = BackgroundTasks()
    async with session_factory() as s:
        await generation_service.retry_look_generation(s, as_user(user), look_id, bg)

    gate.set()
    await running

    look, image = await _state(session_factory, look_id, user.id)
    assert (look.generation_status, look.generation_attempt) == ("pending", 2)
    assert image.status == "pending"
    async with session_factory() as s:
        assert (await s.get(GenerationTask, first_task)).status == "stale"

    await bg()
    look, image = await _state(session_factory, look_id, user.id)
    assert look.generation_status == "completed"


async def test_recover_pending_tasks(db, session_factory, make_user, make_item, provider, notifications):
    user = await make_user()
    look_a, task_a = await _admit(db, user, make_item)
    look_b, task_b = await _admit(db, user, make_item)
    async with session_factory() as s:
        (await s.get(GenerationTask, task_b)).status = "running"
        await s.commit()

    assert await generation_service.recover_pending_tasks() == 2
    await asyncio.gather(*list(generation_service._running))

    for look_id in (look_a, look_b):
        look, _ = await _state(session_factory, look_id, user.id)
        assert look.generation_status == "completed"
