# FILE: nima/services/purchase_service.py
"""
Credit top-ups over M-Pesa.

initiate_purchase -> pending row + background STK push.
The provider webhook then calls complete_purchase or fail_purchase, keyed by
merchant_transaction_id. Webhooks are at-least-once: completion is a
compare-and-swap on status so credits are added exactly once.
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core import database
from nima.core.errors import DuplicateWebhook, NimaError, NotFound, ValidationError, result_code
from nima.models.base import utcnow
from nima.models.credit_purchase import CreditPurchase
from nima.models.user import User
from nima.schemas.credits import (
    CREDIT_PACKAGES,
    CompletePurchaseResult,
    CreditPackage,
    PurchaseHistoryItem,
    PurchaseResponse,
    PurchaseStatus,
)
from nima.services import access_service, credit_service, notification_service, payment_service
from nima.services.payment_service import payment_logger

logger = logging.getLogger("nima.purchases")

PHONE_PATTERN = re.compile(r"^(?:\+254|254|0)(?:7|1)\d{8}$")
DEFAULT_FAILURE_REASON = "Payment failed"


def get_package(package_id: str) -> Optional[CreditPackage]:
    for pkg in CREDIT_PACKAGES:
        if pkg.id == package_id:
            return pkg
    return None


def is_valid_phone(phone: str) -> bool:
    return bool(phone) and bool(PHONE_PATTERN.match(phone.replace(" ", "")))


async def initiate_purchase(
    db: AsyncSession,
    user: Optional[Dict[str, Any]],
    package_id: str,
    phone: str,
    background_tasks: BackgroundTasks,
) -> PurchaseResponse:
    user_id = user.get("id") if user else None
    try:
        user_id = access_service.require_user(user)
        pkg = get_package(package_id)
        if not pkg:
            raise ValidationError("package")
        phone = (phone or "").replace(" ", "")
        if not is_valid_phone(phone):
            raise ValidationError("phone_number", "Use format 0712345678 or +254712345678")

        if await db.get(User, user_id) is None:
            raise NotFound("user")
    except NimaError as exc:
        logger.info("Purchase rejected for user %s: %s", user_id, exc.detail)
        return PurchaseResponse(success=False, error=result_code(exc))

    purchase_id = str(uuid.uuid4())
    merchant_transaction_id = None
    for _ in range(3):
        merchant_transaction_id = payment_service.generate_merchant_transaction_id()
        db.add(CreditPurchase(
            id=purchase_id,
            user_id=user_id,
            package_id=pkg.id,
            credit_amount=pkg.credits,
            price_kes=pkg.price_kes,
            phone_number=phone,
            merchant_transaction_id=merchant_transaction_id,
            status="pending",
        ))
        try:
            await db.flush()
            break
        except IntegrityError:
            await db.rollback()
            logger.warning("Merchant transaction id collision, regenerating")
    else:
        return PurchaseResponse(success=False, error="purchase_failed")

    account = await db.get(User, user_id)
    if account and not account.phone_number:
        account.phone_number = phone
    await db.commit()

    payment_logger.info(
        "Purchase %s created: user=%s package=%s merchant_tx=%s",
        purchase_id, user_id, pkg.id, merchant_transaction_id,
    )

    background_tasks.add_task(
        run_stk_push,
        merchant_transaction_id,
        pkg.price_kes * 100,
        phone,
        f"Nima {pkg.credits} Credits",
    )
    return PurchaseResponse(
        success=True,
        purchase_id=purchase_id,
        merchant_transaction_id=merchant_transaction_id,
    )


async def run_stk_push(merchant_transaction_id: str, amount_minor_units: int, phone: str, narration: str) -> None:
    """Background task: push the prompt, fail the purchase if the provider refuses."""
    reason = await payment_service.send_stk_push(merchant_transaction_id, amount_minor_units, phone, narration)
    if reason is None:
        return
    async with database.SessionLocal() as db:
        await fail_purchase(db, merchant_transaction_id, reason)


async def complete_purchase(
    db: AsyncSession,
    merchant_transaction_id: str,
    provider_transaction_id: str,
    background_tasks: BackgroundTasks,
) -> CompletePurchaseResult:
    purchase = (
        await db.execute(
            select(CreditPurchase)
            .where(CreditPurchase.merchant_transaction_id == merchant_transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not purchase:
        payment_logger.error("Purchase not found for merchant_tx %s", merchant_transaction_id)
        return CompletePurchaseResult(success=False)

    user_id = purchase.user_id
    credit_amount = purchase.credit_amount
    phone = purchase.phone_number

    try:
        if purchase.status == "completed":
            raise DuplicateWebhook()
        marked = await db.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.id == purchase.id,
                CreditPurchase.status != "completed",
            )
            .values(
                status="completed",
                provider_transaction_id=provider_transaction_id or None,
                failure_reason=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount == 0:
            raise DuplicateWebhook()
    except DuplicateWebhook:
        await db.rollback()
        payment_logger.info("Purchase %s already completed, webhook ignored", merchant_transaction_id)
        return CompletePurchaseResult(success=True, user_id=user_id, credits_added=0)

    try:
        new_balance = await credit_service.add_purchased(db, user_id, credit_amount, commit=False)
    except NotFound:
        await db.rollback()
        payment_logger.error("User %s not found for purchase %s", user_id, merchant_transaction_id)
        return CompletePurchaseResult(success=False)

    user = await db.get(User, user_id, populate_existing=True)
    if not user.phone_number and phone:
        user.phone_number = phone
    total = credit_service.calculate_available_credits(
        user.free_credits_used_this_week,
        user.weekly_credits_reset_at,
        new_balance,
    ).total
    await db.commit()

    payment_logger.info(
        "Purchase %s completed: user=%s credits=%s provider_tx=%s",
        merchant_transaction_id, user_id, credit_amount, provider_transaction_id,
    )

    background_tasks.add_task(
        notification_service.send_notification,
        user_id,
        "purchase_success",
        {"credits_added": credit_amount, "new_balance": total},
    )
    return CompletePurchaseResult(
        success=True,
        user_id=user_id,
        credits_added=credit_amount,
        new_balance=new_balance,
    )


async def fail_purchase(db: AsyncSession, merchant_transaction_id: str, reason: Optional[str] = None) -> None:
    reason = reason or DEFAULT_FAILURE_REASON
    result = await db.execute(
        update(CreditPurchase)
        .where(
            CreditPurchase.merchant_transaction_id == merchant_transaction_id,
            CreditPurchase.status != "completed",
        )
        .values(status="failed", failure_reason=reason, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount:
        payment_logger.info("Purchase %s failed: %s", merchant_transaction_id, reason)
        return

    exists = (
        await db.execute(
            select(CreditPurchase.id).where(CreditPurchase.merchant_transaction_id == merchant_transaction_id)
        )
    ).scalar_one_or_none()
    if exists:
        payment_logger.info("Purchase %s already completed, failure ignored", merchant_transaction_id)
    else:
        payment_logger.error("Purchase not found for merchant_tx %s", merchant_transaction_id)


async def get_purchase_status(db: AsyncSession, purchase_id: str, user_id: Optional[str] = None) -> PurchaseStatus:
    purchase = await db.get(CreditPurchase, purchase_id)
    if not purchase:
        return PurchaseStatus(status="failed", failure_reason="Purchase not found")
    if user_id is not None:
        access_service.authorize_owner(user_id, purchase.user_id)
    return PurchaseStatus(status=purchase.status, failure_reason=purchase.failure_reason)


async def get_purchase_history(db: AsyncSession, user_id: str, limit: int = 50) -> List[PurchaseHistoryItem]:
    rows = await db.execute(
        select(CreditPurchase)
        .where(CreditPurchase.user_id == user_id)
        .order_by(CreditPurchase.created_at.desc())
        .limit(limit)
    )
    return [
        PurchaseHistoryItem(
            id=p.id,
            credit_amount=p.credit_amount,
            price_kes=p.price_kes,
            status=p.status,
            created_at=p.created_at,
        )
        for p in rows.scalars().all()
    ]
