# FILE: nima/services/auth_service.py
"""Accounts: bcrypt passwords and the bearer tokens the mobile app sends."""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional

import bcrypt
import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS
from nima.core.errors import ValidationError
from nima.models.base import utcnow
from nima.models.user import User
from nima.services.purchase_service import is_valid_phone

logger = logging.getLogger("nima.auth")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def create_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "sub": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[str]:
    """User id from a bearer token. Raises jwt.InvalidTokenError (incl. expiry)."""
    payload = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    user_id = payload.get("user_id") or payload.get("id")
    return user_id if isinstance(user_id, str) and user_id else None


async def register_user(
    db: AsyncSession,
    email: str,
    password: str,
    name: str,
    phone_number: Optional[str] = None,
    primary_photo_url: Optional[str] = None,
) -> User:
    """New account with a full weekly ration of free credits."""
    email = normalize_email(email)
    taken = (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none()
    if taken:
        raise ValidationError("email", "Email already registered")
    if phone_number and not is_valid_phone(phone_number):
        raise ValidationError("phone_number", "Invalid phone number")

    now = utcnow()
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=hash_password(password),
        name=name,
        phone_number=phone_number,
        primary_photo_url=primary_photo_url,
        purchased_credits=0,
        free_credits_used_this_week=0,
        weekly_credits_reset_at=now,
        created_at=now,
    )
    db.add(user)
    await db.commit()
    logger.info("Registered user %s", user.id)
    return user


async def authenticate(db: AsyncSession, email: str, password: str) -> Optional[User]:
    user = (
        await db.execute(select(User).where(User.email == normalize_email(email)))
    ).scalar_one_or_none()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user
