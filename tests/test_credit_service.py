import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi import BackgroundTasks

from nima.core.errors import InsufficientCredits, NotFound
from nima.models.user import User
from nima.services import credit_service

from conftest import hours_ago


def test_weekly_reset_due_after_seven_days():
    now = datetime(2025, 3, 10, 12, 0)
    assert credit_service.should_reset_weekly_credits(None, now)
    assert credit_service.should_reset_weekly_credits(now - timedelta(days=7), now)
    assert not credit_service.should_reset_weekly_credits(now - timedelta(days=6, hours=23), now)


def test_available_credits_ignores_usage_once_reset_is_due():
    now = datetime(2025, 3, 10, 12, 0)
    stale = credit_service.calculate_available_credits(5, now - timedelta(days=8), 3, now)
    assert (stale.free_remaining, stale.purchased, stale.total) == (5, 3, 8)

    fresh = credit_service.calculate_available_credits(4, now - timedelta(days=1), 3, now)
    assert (fresh.free_remaining, fresh.total, fresh.free_per_week) == (1, 4, 5)


async def test_get_balance_missing_user(db):
    with pytest.raises(NotFound):
        await credit_service.get_balance(db, "nope")


async def test_deduct_spends_free_credits_first(db, make_user, notifications):
    user = await make_user(purchased_credits=3, free_credits_used_this_week=3)
    bg = BackgroundTasks()

    result = await credit_service.deduct(db, user.id, bg)
    assert result.success and result.remaining == 4

    balance = await credit_service.get_balance(db, user.id)
    assert (balance.free_remaining, balance.purchased) == (1, 3)
    assert bg.tasks == []


async def test_deduct_falls_back_to_purchased_and_warns_when_low(db, make_user, notifications):
    user = await make_user(purchased_credits=2, free_credits_used_this_week=5)
    bg = BackgroundTasks()

    result = await credit_service.deduct(db, user.id, bg)
    assert result.remaining == 1

    balance = await credit_service.get_balance(db, user.id)
    assert (balance.free_remaining, balance.purchased) == (0, 1)

    await bg()
    assert notifications == [(user.id, "low_credit", {"remaining": 1})]


async def test_deduct_insufficient_leaves_ledger_untouched(db, session_factory, make_user):
    user = await make_user(purchased_credits=0, free_credits_used_this_week=5)

    with pytest.raises(InsufficientCredits) as exc:
        await credit_service.deduct(db, user.id, BackgroundTasks())
    assert exc.value.remaining == 0

    async with session_factory() as s:
        row = await s.get(User, user.id)
        assert row.credit_version == 0
        assert row.free_credits_used_this_week == 5


async def test_deduct_persists_lazy_weekly_reset(db, session_factory, make_user, notifications):
    user = await make_user(free_credits_used_this_week=5, weekly_credits_reset_at=hours_ago(24 * 8))

    result = await credit_service.deduct(db, user.id, BackgroundTasks())
    assert result.remaining == 4

    async with session_factory() as s:
        row = await s.get(User, user.id)
        assert row.free_credits_used_this_week == 1
        assert row.weekly_credits_reset_at > hours_ago(1)
        assert row.credit_version == 1


async def test_deduct_multiple_credits_spans_both_buckets(db, make_user, notifications):
    user = await make_user(purchased_credits=10, free_credits_used_this_week=4)
    result = await credit_service.deduct(db, user.id, BackgroundTasks(), count=3)
    assert result.remaining == 8

    balance = await credit_service.get_balance(db, user.id)
    assert (balance.free_remaining, balance.purchased) == (0, 8)


async def test_concurrent_deducts_never_overspend(session_factory, make_user, notifications):
    user = await make_user(purchased_credits=0, free_credits_used_this_week=0)

    async def attempt():
        async with session_factory() as s:
            try:
                await credit_service.deduct(s, user.id, BackgroundTasks())
                return True
            except InsufficientCredits:
                return False

    results = await asyncio.gather(*[attempt() for _ in range(8)])
    assert results.count(True) == 5

    async with session_factory() as s:
        row = await s.get(User, user.id)
        assert row.free_credits_used_this_week == 5
        assert row.purchased_credits == 0


async def test_add_purchased_increments_balance(db, make_user):
    user = await make_user(purchased_credits=4)
    assert await credit_service.add_purchased(db, user.id, 20) == 24
    assert (await credit_service.get_balance(db, user.id)).purchased == 24


async def test_add_purchased_unknown_user(db):
    with pytest.raises(NotFound):
        await credit_service.add_purchased(db, "missing", 10)


@pytest.mark.parametrize("purchased", [0, 3])
async def test_deduct_succeeds_exactly_free_plus_purchased_times(db, make_user, notifications, purchased):
    user = await make_user(purchased_credits=purchased)
    for expected_remaining in range(4 + purchased, -1, -1):
        result = await credit_service.deduct(db, user.id, BackgroundTasks())
        assert result.remaining == expected_remaining

    with pytest.raises(InsufficientCredits):
        await credit_service.deduct(db, user.id, BackgroundTasks())
