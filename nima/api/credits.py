# /nima/api/credits.py
"""Credit balance, M-Pesa purchases and the payment provider webhook."""

import json
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from nima.api.deps import get_current_user, get_optional_user
from nima.core import config
from nima.core.database import get_db
from nima.schemas.credits import (
    CREDIT_PACKAGES,
    CreditBalance,
    CreditPackage,
    PurchaseHistoryItem,
    PurchaseRequest,
    PurchaseResponse,
    PurchaseStatus,
)
from nima.services import credit_service, payment_service, purchase_service
from nima.services.payment_service import payment_logger

SIGNATURE_HEADER = "x-webhook-signature"

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalance)
async def get_user_credits(user: Optional[dict] = Depends(get_optional_user), db: AsyncSession = Depends(get_db)):
    if not user:
        return CreditBalance(free_remaining=0, purchased=0, total=0, free_per_week=config.FREE_WEEKLY_CREDITS)
    return await credit_service.get_balance(db, user["id"])


@router.get("/packages", response_model=List[CreditPackage])
async def get_credit_packages():
    return CREDIT_PACKAGES


@router.get("/history", response_model=List[PurchaseHistoryItem])
async def get_purchase_history(user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await purchase_service.get_purchase_history(db, user["id"])


@router.post("/purchase", response_model=PurchaseResponse)
async def initiate_purchase(
    data: PurchaseRequest,
    background_tasks: BackgroundTasks,
    user: Optional[dict] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    return await purchase_service.initiate_purchase(
        db, user, data.package_id, data.phone_number, background_tasks
    )


@router.get("/purchase/{purchase_id}", response_model=PurchaseStatus)
async def get_purchase_status(purchase_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await purchase_service.get_purchase_status(db, purchase_id, user_id=user["id"])


@router.post("/webhook/mobile-money")
async def mobile_money_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Provider callback. Delivered at least once; duplicates are absorbed."""
    body = await request.body()
    if not payment_service.verify_webhook_signature(body, request.headers.get(SIGNATURE_HEADER)):
        payment_logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
        event = payment_service.parse_webhook(payload)
    except (ValueError, AttributeError) as exc:
        payment_logger.error("Invalid webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    payment_logger.info(
        "Webhook %s for %s (status=%s)", event.event_type or "-", event.merchant_transaction_id, event.status or "-"
    )

    if event.outcome == "completed":
        result = await purchase_service.complete_purchase(
            db, event.merchant_transaction_id, event.provider_transaction_id, background_tasks
        )
        return {"received": True, "success": result.success}

    if event.outcome == "failed":
        await purchase_service.fail_purchase(db, event.merchant_transaction_id, event.failure_reason)
        return {"received": True, "success": True}

    payment_logger.info("Unhandled webhook event for %s", event.merchant_transaction_id)
    return {"received": True}
