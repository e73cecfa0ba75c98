# =========================================================
# FILE: /nima/schemas/credits.py
# =========================================================

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class CreditBalance(BaseModel):
    free_remaining: int
    purchased: int
    total: int
    free_per_week: int


class DeductResult(BaseModel):
    success: bool
    remaining: int


class CreditPackage(BaseModel):
    id: str
    credits: int
    price_kes: int
    label: str
    popular: bool = False


class PurchaseRequest(BaseModel):
    package_id: str
    phone_number: str


class PurchaseResponse(BaseModel):
    success: bool
    purchase_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    error: Optional[str] = None


class PurchaseStatus(BaseModel):
    status: str  # pending | completed | failed
    failure_reason: Optional[str] = None


class PurchaseHistoryItem(BaseModel):
    id: str
    credit_amount: int
    price_kes: int
    status: str
    created_at: datetime


class CompletePurchaseResult(BaseModel):
    success: bool
    user_id: Optional[str] = None
    credits_added: Optional[int] = None
    new_balance: Optional[int] = None


class WebhookEvent(BaseModel):
    """Provider callback reduced to what the orchestrator needs."""
    merchant_transaction_id: str
    provider_transaction_id: str = ""
    outcome: str  # completed | failed | unknown
    failure_reason: Optional[str] = None
    event_type: str = ""
    status: str = ""


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(id="pack_10", credits=10, price_kes=500, label="10 Credits"),
    CreditPackage(id="pack_20", credits=20, price_kes=1000, label="20 Credits", popular=True),
    CreditPackage(id="pack_50", credits=50, price_kes=2500, label="50 Credits"),
    CreditPackage(id="pack_100", credits=100, price_kes=5000, label="100 Credits"),
]
