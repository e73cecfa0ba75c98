# /nima/models/look_image.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, DateTime, ForeignKey, UniqueConstraint

from nima.core.database import Base
from nima.models.base import utcnow


class LookImage(Base):
    """Rendered image of a look for one viewer (composited on that viewer's photo)."""
    __tablename__ = "look_images"
    __table_args__ = (UniqueConstraint("look_id", "user_id", name="uq_look_images_look_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    look_id: Mapped[str] = mapped_column(String(36), ForeignKey("looks.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    # Storage key, set once generation completes
    storage_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Status: pending, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending")
    generation_provider: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cache expiry
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
