# FILE: nima/api/auth.py
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core.database import get_db
from nima.core.errors import ValidationError
from nima.models.base import utcnow
from nima.models.push_token import PushToken
from nima.models.user import User
from nima.schemas.auth import (
    ProfileUpdate,
    PushTokenRequest,
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
)
from nima.services import auth_service
from nima.services.purchase_service import is_valid_phone
from nima.api.deps import get_current_user, user_to_dict

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=TokenResponse)
async def register(data: UserCreate, db: AsyncSession = Depends(get_db)):
    try:
        user = await auth_service.register_user(
            db, data.email, data.password, data.name,
            phone_number=data.phone_number,
            primary_photo_url=data.primary_photo_url,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.detail)

    return TokenResponse(token=auth_service.create_token(user.id, user.email), user=UserResponse(**user_to_dict(user)))


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await auth_service.authenticate(db, data.email, data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return TokenResponse(token=auth_service.create_token(user.id, user.email), user=UserResponse(**user_to_dict(user)))


@router.get("/me", response_model=UserResponse)
async def auth_me(user=Depends(get_current_user)):
    return UserResponse(**user)


@router.patch("/me", response_model=UserResponse)
async def update_profile(data: ProfileUpdate, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    row = await db.get(User, user["id"])
    if data.phone_number is not None:
        if not is_valid_phone(data.phone_number):
            raise HTTPException(status_code=400, detail="Invalid phone number")
        row.phone_number = data.phone_number.replace(" ", "")
    if data.name is not None:
        row.name = data.name
    if data.primary_photo_url is not None:
        row.primary_photo_url = data.primary_photo_url
    row.updated_at = utcnow()
    await db.commit()
    return UserResponse(**user_to_dict(row))


@router.post("/push-token")
async def register_push_token(
    data: PushTokenRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if data.platform not in {"ios", "android", "web"}:
        raise HTTPException(status_code=400, detail="Invalid platform")

    existing = (await db.execute(select(PushToken).where(PushToken.token == data.token))).scalar_one_or_none()
    if existing:
        existing.user_id = user["id"]
        existing.platform = data.platform
    else:
        db.add(PushToken(id=str(uuid.uuid4()), user_id=user["id"], token=data.token, platform=data.platform))
    await db.commit()
    return {"success": True}
