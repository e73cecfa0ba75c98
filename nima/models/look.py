# /nima/models/look.py
from datetime import datetime
from typing import Optional, List
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, JSON, Index

from nima.core.database import Base
from nima.models.base import utcnow


class Look(Base):
    """A generated outfit: 2-6 catalog items rendered on the requesting user."""
    __tablename__ = "looks"
    __table_args__ = (
        # Rate limit query: looks by creator in the trailing window
        Index("ix_looks_creator_created_at", "creator_user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    public_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)

    item_ids: Mapped[List[str]] = mapped_column(JSON)
    total_price: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="KES")

    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    style_tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    occasion: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    # Generation: pending, processing, completed, failed
    generation_status: Mapped[str] = mapped_column(String(20), default="pending")
    # Incremented by every retry; generation tasks carry the attempt they serve
    generation_attempt: Mapped[int] = mapped_column(Integer, default=1)

    # Curation: pending, saved, discarded
    curation_status: Mapped[str] = mapped_column(String(20), default="pending")

    # Creator: user, system
    created_by: Mapped[str] = mapped_column(String(20), default="user")
    creator_user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Source: apparel, recreated, chat, onboarding
    creation_source: Mapped[str] = mapped_column(String(20), default="apparel")
    original_look_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("looks.id", ondelete="SET NULL"), nullable=True
    )

    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    shared_with_friends: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
