# /nima/models/credit_purchase.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, ForeignKey, DateTime

from nima.core.database import Base
from nima.models.base import utcnow


class CreditPurchase(Base):
    """M-Pesa credit top-up, completed or failed by the payment webhook."""
    __tablename__ = "credit_purchases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    # Package details
    package_id: Mapped[str] = mapped_column(String(30))
    credit_amount: Mapped[int] = mapped_column(Integer)
    price_kes: Mapped[int] = mapped_column(Integer)

    # Payment details
    phone_number: Mapped[str] = mapped_column(String(20))
    # Our reference, shared with the provider; the webhook idempotency key
    merchant_transaction_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    # Status: pending, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
