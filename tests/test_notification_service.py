import pytest

from nima.core import config
from nima.models.push_token import PushToken
from nima.services import notification_service


def test_low_credit_messages():
    _, body, data, channel = notification_service.build_message("low_credit", {"remaining": 1})
    assert body == "Only 1 credit left. Top up to keep discovering looks."
    assert (data, channel) == ({"type": "low_credits", "remaining": 1}, "credits")

    _, body, _, _ = notification_service.build_message("low_credit", {"remaining": 0})
    assert body.startswith("You're out of credits")


def test_look_ready_message():
    title, body, data, channel = notification_service.build_message(
        "look_ready", {"look_id": "l1", "look_name": "Office Look"}
    )
    assert "Office Look" in body
    assert data == {"type": "look_ready", "lookId": "l1"}
    assert channel == "looks"


def test_unknown_kind():
    with pytest.raises(ValueError):
        notification_service.build_message("birthday", {})


async def test_sends_one_message_per_token(session_factory, make_user, monkeypatch):
    user = await make_user()
    async with session_factory() as s:
        s.add_all([
            PushToken(id="t1", user_id=user.id, token="ExponentPushToken[a]", platform="ios"),
            PushToken(id="t2", user_id=user.id, token="ExponentPushToken[b]", platform="android"),
        ])
        await s.commit()

    posted = []

    async def fake_post(messages):
        posted.extend(messages)

    monkeypatch.setattr(config, "PUSH_NOTIFICATIONS_ENABLED", True)
    monkeypatch.setattr(notification_service, "_post_expo", fake_post)
    await notification_service.send_notification(user.id, "purchase_success", {"credits_added": 20, "new_balance": 25})

    assert sorted(m["to"] for m in posted) == ["ExponentPushToken[a]", "ExponentPushToken[b]"]
    assert posted[0]["body"] == "20 credits added to your account. You now have 25 credits."


async def test_delivery_errors_are_swallowed(session_factory, make_user, monkeypatch):
    user = await make_user()
    async with session_factory() as s:
        s.add(PushToken(id="t1", user_id=user.id, token="ExponentPushToken[a]", platform="ios"))
        await s.commit()

    async def broken(messages):
        raise RuntimeError("expo down")

    monkeypatch.setattr(config, "PUSH_NOTIFICATIONS_ENABLED", True)
    monkeypatch.setattr(notification_service, "_post_expo", broken)
    await notification_service.send_notification(user.id, "look_ready", {"look_id": "x"})


async def test_user_without_tokens_is_skipped(session_factory, make_user, monkeypatch):
    user = await make_user()
    called = []

    async def fake_post(messages):
        called.append(messages)

    monkeypatch.setattr(notification_service, "_post_expo", fake_post)
    await notification_service.send_notification(user.id, "look_ready", {"look_id": "x"})
    assert called == []


def test_tryon_ready_message():
    _, body, data, channel = notification_service.build_message(
        "tryon_ready", {"try_on_id": "t1", "item_name": "Midi Dress"}
    )
    assert '"Midi Dress"' in body
    assert (data, channel) == ({"type": "tryon_ready", "itemTryOnId": "t1"}, "looks")
