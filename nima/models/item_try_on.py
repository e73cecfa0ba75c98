# /nima/models/item_try_on.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, UniqueConstraint

from nima.core.database import Base
from nima.models.base import utcnow


class ItemTryOn(Base):
    """One catalog item rendered on one user. Reused until it fails."""
    __tablename__ = "item_try_ons"
    __table_args__ = (UniqueConstraint("item_id", "user_id", name="uq_item_try_ons_item_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(36), ForeignKey("items.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    # Variant picked on the product page
    selected_size: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    selected_color: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    # Status: pending, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    # Bumped by each paid retry; a worker only writes while its attempt is current
    attempt: Mapped[int] = mapped_column(Integer, default=1)

    storage_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    generation_provider: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
