# FILE: nima/services/credit_service.py
"""
Credit ledger: free weekly ration + purchased balance, stored on the user row.

Free credits are spent first. The weekly ration resets lazily: a reset is due
once WEEKLY_RESET_INTERVAL has elapsed since weekly_credits_reset_at, and the
reset is only persisted by the next deduction.

Every write goes through the user row. Reads take a row lock (FOR UPDATE on
MySQL) and writes are compare-and-swap on credit_version, so concurrent
deductions for one user serialize on any backend.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nima.core import config
from nima.core.errors import InsufficientCredits, LedgerConflict, NotFound
from nima.models.base import utcnow
from nima.models.user import User
from nima.schemas.credits import CreditBalance, DeductResult
from nima.services import notification_service

logger = logging.getLogger("nima.credits")


def should_reset_weekly_credits(reset_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if reset_at is None:
        return True
    return (now or utcnow()) - reset_at >= config.WEEKLY_RESET_INTERVAL


def calculate_available_credits(
    free_used: int,
    reset_at: Optional[datetime],
    purchased: int,
    now: Optional[datetime] = None,
) -> CreditBalance:
    if should_reset_weekly_credits(reset_at, now):
        free_used = 0
    free_remaining = max(0, config.FREE_WEEKLY_CREDITS - (free_used or 0))
    purchased = purchased or 0
    return CreditBalance(
        free_remaining=free_remaining,
        purchased=purchased,
        total=free_remaining + purchased,
        free_per_week=config.FREE_WEEKLY_CREDITS,
    )


async def _load_user(db: AsyncSession, user_id: str, for_update: bool = False) -> User:
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    user = (await db.execute(stmt)).scalar_one_or_none()
    if not user:
        raise NotFound("user")
    return user


async def get_balance(db: AsyncSession, user_id: str) -> CreditBalance:
    user = await _load_user(db, user_id)
    return calculate_available_credits(
        user.free_credits_used_this_week,
        user.weekly_credits_reset_at,
        user.purchased_credits,
    )


async def deduct(
    db: AsyncSession,
    user_id: str,
    background_tasks: BackgroundTasks,
    count: int = 1,
    commit: bool = True,
) -> DeductResult:
    """
    Spend `count` credits, free bucket first.

    Raises InsufficientCredits (nothing written) when the balance is short.
    Must run before any other pending write in `db`: a lost compare-and-swap
    rolls the session back and retries.
    """
    if count < 1:
        raise ValueError("count must be positive")

    for attempt in range(1, config.LEDGER_MAX_RETRIES + 1):
        user = await _load_user(db, user_id, for_update=True)
        now = utcnow()
        seen_version = user.credit_version or 0

        reset_due = should_reset_weekly_credits(user.weekly_credits_reset_at, now)
        free_used = 0 if reset_due else (user.free_credits_used_this_week or 0)
        purchased = user.purchased_credits or 0
        free_remaining = max(0, config.FREE_WEEKLY_CREDITS - free_used)
        total = free_remaining + purchased

        if total < count:
            raise InsufficientCredits(total)

        from_free = min(count, free_remaining)
        new_free_used = free_used + from_free
        new_purchased = purchased - (count - from_free)

        values = {
            "free_credits_used_this_week": new_free_used,
            "purchased_credits": new_purchased,
            "credit_version": seen_version + 1,
            "updated_at": now,
        }
        if reset_due:
            values["weekly_credits_reset_at"] = now

        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.credit_version == seen_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            break

        await db.rollback()
        logger.info("Ledger write conflict for user %s (attempt %s), retrying", user_id, attempt)
    else:
        raise LedgerConflict(f"Could not update credits for user {user_id}")

    if commit:
        await db.commit()

    remaining = max(0, config.FREE_WEEKLY_CREDITS - new_free_used) + new_purchased
    logger.info("Deducted %s credit(s) from user %s, %s remaining", count, user_id, remaining)

    if remaining <= config.LOW_CREDIT_THRESHOLD:
        background_tasks.add_task(
            notification_service.send_notification, user_id, "low_credit", {"remaining": remaining}
        )

    return DeductResult(success=True, remaining=remaining)


async def add_purchased(db: AsyncSession, user_id: str, amount: int, commit: bool = True) -> int:
    """Atomically add purchased credits. Returns the new purchased balance."""
    if amount < 0:
        raise ValueError("amount must not be negative")

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            purchased_credits=User.purchased_credits + amount,
            credit_version=User.credit_version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("user")

    new_balance = (
        await db.execute(select(User.purchased_credits).where(User.id == user_id))
    ).scalar_one()

    if commit:
        await db.commit()
    return int(new_balance)
