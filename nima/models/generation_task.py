# /nima/models/generation_task.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, UniqueConstraint

from nima.core.database import Base
from nima.models.base import utcnow


class GenerationTask(Base):
    """Durable queue entry for one generation attempt of a look."""
    __tablename__ = "generation_tasks"
    __table_args__ = (UniqueConstraint("look_id", "attempt", name="uq_generation_tasks_look_attempt"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    look_id: Mapped[str] = mapped_column(String(36), ForeignKey("looks.id", ondelete="CASCADE"), index=True)
    # Requesting user: the photo composited and the LookImage owner
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    attempt: Mapped[int] = mapped_column(Integer, default=1)

    # Status: queued, running, done, failed, stale
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
