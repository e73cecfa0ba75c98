# /nima/models/user.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime

from nima.core.database import Base
from nima.models.base import utcnow

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(190), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(120))

    # M-Pesa number, saved from the first purchase if not set
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Reference photo composited into every generated look
    primary_photo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Credit ledger: purchased balance + free weekly ration
    purchased_credits: Mapped[int] = mapped_column(Integer, default=0)
    free_credits_used_this_week: Mapped[int] = mapped_column(Integer, default=0)
    weekly_credits_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Bumped by every ledger write (compare-and-swap guard)
    credit_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
