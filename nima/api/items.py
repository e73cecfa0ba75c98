# FILE: nima/api/items.py

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nima.api.deps import get_current_user, get_optional_user
from nima.core.database import get_db
from nima.schemas.looks import TryOnRequest, TryOnResult, TryOnStatus
from nima.services import look_service

router = APIRouter(prefix="/api/items", tags=["items"])


@router.post("/{item_id}/try-on", response_model=TryOnResult)
async def start_item_try_on(
    item_id: str,
    background_tasks: BackgroundTasks,
    data: Optional[TryOnRequest] = None,
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    data = data or TryOnRequest()
    return await look_service.try_on_item(
        db, user, item_id, background_tasks,
        selected_size=data.selected_size,
        selected_color=data.selected_color,
    )


@router.get("/{item_id}/try-on", response_model=TryOnStatus)
async def get_item_try_on(item_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await look_service.get_try_on_status(db, user, item_id)
