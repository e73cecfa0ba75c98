import asyncio

import pytest
from fastapi import BackgroundTasks
from sqlalchemy import select

from nima.core.errors import Unauthorized
from nima.models.credit_purchase import CreditPurchase
from nima.models.user import User
from nima.services import payment_service, purchase_service

from conftest import as_user


async def _purchase(session_factory, user, package_id="pack_20", phone="0712345678"):
    async with session_factory() as s:
        result = await purchase_service.initiate_purchase(s, as_user(user), package_id, phone, BackgroundTasks())
    assert result.success
    return result


@pytest.mark.parametrize("phone", ["0712345678", "0112345678", "254712345678", "+254712345678", "0712 345 678"])
def test_valid_kenyan_numbers(phone):
    assert purchase_service.is_valid_phone(phone)


@pytest.mark.parametrize("phone", ["", "0812345678", "071234567", "+255712345678", "07123456789"])
def test_invalid_phone_numbers(phone):
    assert not purchase_service.is_valid_phone(phone)


async def test_initiate_rejects_unknown_package(db, make_user):
    user = await make_user()
    result = await purchase_service.initiate_purchase(db, as_user(user), "pack_7", "0712345678", BackgroundTasks())
    assert not result.success
    assert result.error == "invalid_package"


async def test_initiate_rejects_bad_phone(db, make_user):
    user = await make_user()
    result = await purchase_service.initiate_purchase(db, as_user(user), "pack_10", "12345", BackgroundTasks())
    assert result.error == "invalid_phone_number"
    assert (await db.execute(select(CreditPurchase))).scalars().all() == []


async def test_initiate_creates_pending_purchase_and_schedules_push(db, session_factory, make_user):
    user = await make_user(phone_number=None)
    bg = BackgroundTasks()

    result = await purchase_service.initiate_purchase(db, as_user(user), "pack_20", "+254712345678", bg)
    assert result.success
    assert result.merchant_transaction_id.startswith("nima_cr_")
    assert len(result.merchant_transaction_id) == len("nima_cr_") + 16

    async with session_factory() as s:
        purchase = await s.get(CreditPurchase, result.purchase_id)
        assert (purchase.status, purchase.credit_amount, purchase.price_kes) == ("pending", 20, 1000)
        assert (await s.get(User, user.id)).phone_number == "+254712345678"

    task = bg.tasks[0]
    assert task.func is purchase_service.run_stk_push
    assert task.args == (result.merchant_transaction_id, 100000, "+254712345678", "Nima 20 Credits")


async def test_initiate_keeps_existing_phone(session_factory, make_user):
    user = await make_user(phone_number="0700000001")
    await _purchase(session_factory, user, phone="0712345678")
    async with session_factory() as s:
        assert (await s.get(User, user.id)).phone_number == "0700000001"


async def test_complete_adds_credits_once(session_factory, make_user, notifications):
    user = await make_user(purchased_credits=1)
    started = await _purchase(session_factory, user)

    async with session_factory() as s:
        bg = BackgroundTasks()
        first = await purchase_service.complete_purchase(s, started.merchant_transaction_id, "prov_1", bg)
        await bg()
    assert first.success and first.credits_added == 20 and first.new_balance == 21
    assert notifications[0][1] == "purchase_success"
    assert notifications[0][2]["credits_added"] == 20

    async with session_factory() as s:
        second = await purchase_service.complete_purchase(s, started.merchant_transaction_id, "prov_1", BackgroundTasks())
    assert second.success and second.credits_added == 0

    async with session_factory() as s:
        assert (await s.get(User, user.id)).purchased_credits == 21
        purchase = await s.get(CreditPurchase, started.purchase_id)
        assert purchase.status == "completed"
        assert purchase.provider_transaction_id == "prov_1"


async def test_concurrent_duplicate_webhooks_credit_once(session_factory, make_user, notifications):
    user = await make_user()
    started = await _purchase(session_factory, user, package_id="pack_10")

    async def deliver():
        async with session_factory() as s:
            return await purchase_service.complete_purchase(
                s, started.merchant_transaction_id, "prov_dup", BackgroundTasks()
            )

    results = await asyncio.gather(*[deliver() for _ in range(4)])
    assert all(r.success for r in results)
    assert sorted(r.credits_added for r in results) == [0, 0, 0, 10]

    async with session_factory() as s:
        assert (await s.get(User, user.id)).purchased_credits == 10


async def test_complete_unknown_purchase(db):
    result = await purchase_service.complete_purchase(db, "nima_cr_missing", "x", BackgroundTasks())
    assert not result.success


async def test_fail_purchase_default_reason(session_factory, make_user):
    user = await make_user()
    started = await _purchase(session_factory, user)
    async with session_factory() as s:
        await purchase_service.fail_purchase(s, started.merchant_transaction_id, None)
        status = await purchase_service.get_purchase_status(s, started.purchase_id)
    assert (status.status, status.failure_reason) == ("failed", "Payment failed")


async def test_fail_after_complete_is_ignored(session_factory, make_user, notifications):
    user = await make_user()
    started = await _purchase(session_factory, user)
    async with session_factory() as s:
        await purchase_service.complete_purchase(s, started.merchant_transaction_id, "p", BackgroundTasks())
    async with session_factory() as s:
        await purchase_service.fail_purchase(s, started.merchant_transaction_id, "Cancelled by user")
        status = await purchase_service.get_purchase_status(s, started.purchase_id)
    assert status.status == "completed"


async def test_late_success_completes_failed_purchase(session_factory, make_user, notifications):
    user = await make_user()
    started = await _purchase(session_factory, user, package_id="pack_10")
    async with session_factory() as s:
        await purchase_service.fail_purchase(s, started.merchant_transaction_id, "Timeout")
    async with session_factory() as s:
        result = await purchase_service.complete_purchase(s, started.merchant_transaction_id, "p", BackgroundTasks())
    assert result.credits_added == 10

    async with session_factory() as s:
        status = await purchase_service.get_purchase_status(s, started.purchase_id)
    assert status.status == "completed" and status.failure_reason is None


async def test_missing_purchase_reads_as_failed(db):
    status = await purchase_service.get_purchase_status(db, "does-not-exist")
    assert (status.status, status.failure_reason) == ("failed", "Purchase not found")


async def test_purchase_status_is_owner_only(session_factory, make_user):
    owner = await make_user()
    other = await make_user()
    started = await _purchase(session_factory, owner)
    async with session_factory() as s:
        with pytest.raises(Unauthorized):
            await purchase_service.get_purchase_status(s, started.purchase_id, user_id=other.id)


async def test_history_lists_own_purchases(session_factory, make_user):
    user = await make_user()
    other = await make_user()
    await _purchase(session_factory, user, package_id="pack_10")
    await _purchase(session_factory, user, package_id="pack_50")
    await _purchase(session_factory, other)

    async with session_factory() as s:
        history = await purchase_service.get_purchase_history(s, user.id)
    assert sorted(h.credit_amount for h in history) == [10, 50]


async def test_rejected_stk_push_fails_purchase(session_factory, make_user, monkeypatch):
    user = await make_user()
    started = await _purchase(session_factory, user)

    async def refuse(*args):
        return "Invalid phone number"

    monkeypatch.setattr(payment_service, "send_stk_push", refuse)
    await purchase_service.run_stk_push(started.merchant_transaction_id, 100000, "0712345678", "Nima 20 Credits")

    async with session_factory() as s:
        status = await purchase_service.get_purchase_status(s, started.purchase_id)
    assert (status.status, status.failure_reason) == ("failed", "Invalid phone number")


async def test_accepted_stk_push_leaves_purchase_pending(session_factory, make_user, monkeypatch):
    user = await make_user()
    started = await _purchase(session_factory, user)

    async def accept(*args):
        return None

    monkeypatch.setattr(payment_service, "send_stk_push", accept)
    await purchase_service.run_stk_push(started.merchant_transaction_id, 100000, "0712345678", "Nima 20 Credits")

    async with session_factory() as s:
        assert (await purchase_service.get_purchase_status(s, started.purchase_id)).status == "pending"


async def test_initiate_requires_signed_in_user(db):
    bg = BackgroundTasks()
    result = await purchase_service.initiate_purchase(db, None, "pack_10", "0712345678", bg)
    assert (result.success, result.error) == (False, "authentication_required")
    assert bg.tasks == []
    assert (await db.execute(select(CreditPurchase))).scalars().all() == []
