# FILE: nima/api/looks.py

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nima.api.deps import get_current_user, get_optional_user
from nima.core.database import get_db
from nima.schemas.looks import (
    ActionResult,
    CreateLookRequest,
    CreateLookResult,
    GenerationStatus,
    LookResponse,
    VisibilityRequest,
)
from nima.services import curation_service, generation_service, look_service

router = APIRouter(prefix="/api/looks", tags=["looks"])


# Creation endpoints report rejections in the body rather than as HTTP errors.
@router.post("", response_model=CreateLookResult)
async def create_look(
    data: CreateLookRequest,
    background_tasks: BackgroundTasks,
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    return await look_service.create_look_from_selected_items(
        db, user, data.item_ids, data.occasion, background_tasks
    )


@router.post("/{look_id}/recreate", response_model=CreateLookResult)
async def recreate_look(
    look_id: str,
    background_tasks: BackgroundTasks,
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    return await look_service.recreate_look(db, user, look_id, background_tasks)


@router.post("/{look_id}/retry", response_model=ActionResult)
async def retry_look_generation(
    look_id: str,
    background_tasks: BackgroundTasks,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await generation_service.retry_look_generation(db, user, look_id, background_tasks)


@router.get("/{look_id}/status", response_model=GenerationStatus)
async def get_look_generation_status(look_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await look_service.get_generation_status(db, user, look_id)


@router.post("/{look_id}/save", response_model=ActionResult)
async def save_look(look_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await curation_service.save_look(db, user, look_id)


@router.post("/{look_id}/discard", response_model=ActionResult)
async def discard_look(look_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await curation_service.discard_look(db, user, look_id)


@router.post("/{look_id}/restore", response_model=ActionResult)
async def restore_look(look_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await curation_service.restore_look(db, user, look_id)


@router.patch("/{look_id}/visibility", response_model=LookResponse)
async def update_look_visibility(
    look_id: str,
    data: VisibilityRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    look = await curation_service.update_look_visibility(
        db, user, look_id, data.is_public, data.shared_with_friends
    )
    return LookResponse.model_validate(look, from_attributes=True)
