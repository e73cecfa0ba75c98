# FILE: nima/api/deps.py

import jwt
from datetime import timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core.database import get_db
from nima.models.user import User
from nima.services.auth_service import decode_token

security = HTTPBearer(auto_error=False)


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone_number": user.phone_number,
        "primary_photo_url": user.primary_photo_url,
        "created_at": user.created_at.replace(tzinfo=timezone.utc).isoformat(),
    }


async def _resolve_user(token: str, db: AsyncSession) -> dict:
    try:
        user_id = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user_to_dict(user)


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_db),
):
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return await _resolve_user(credentials.credentials, db)


async def get_optional_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_db),
) -> Optional[dict]:
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if not credentials or not credentials.credentials:
        return None
    return await _resolve_user(credentials.credentials, db)
