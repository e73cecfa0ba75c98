# FILE: nima/services/notification_service.py
import logging
from typing import Any, Dict, List, Tuple

import httpx
from sqlalchemy import select

from nima.core import config, database
from nima.models.push_token import PushToken

logger = logging.getLogger("nima.notifications")

NOTIFICATION_KINDS = {"low_credit", "purchase_success", "look_ready", "tryon_ready"}


def build_message(kind: str, payload: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any], str]:
    """Return (title, body, data, channel) for a notification kind."""
    if kind == "low_credit":
        remaining = int(payload.get("remaining") or 0)
        if remaining == 0:
            body = "You're out of credits! Top up to keep discovering looks."
        else:
            plural = "" if remaining == 1 else "s"
            body = f"Only {remaining} credit{plural} left. Top up to keep discovering looks."
        return "⚡ Running Low on Credits", body, {"type": "low_credits", "remaining": remaining}, "credits"

    if kind == "purchase_success":
        added = int(payload.get("credits_added") or 0)
        balance = int(payload.get("new_balance") or 0)
        body = f"{added} credits added to your account. You now have {balance} credits."
        data = {"type": "credits_purchased", "creditsAdded": added, "newBalance": balance}
        return "🎉 Credits Added!", body, data, "credits"

    if kind == "look_ready":
        name = payload.get("look_name") or "Your New Look"
        body = f'"{name}" has been generated. Tap to see yourself in this outfit!'
        return "✨ Your Look is Ready!", body, {"type": "look_ready", "lookId": payload.get("look_id")}, "looks"

    if kind == "tryon_ready":
        name = payload.get("item_name") or "your item"
        body = f'Your virtual try-on for "{name}" is ready. Tap to see how it looks on you!'
        return "👗 Try-On Ready!", body, {"type": "tryon_ready", "itemTryOnId": payload.get("try_on_id")}, "looks"

    raise ValueError(f"Unknown notification kind: {kind}")


async def _load_tokens(user_id: str) -> List[str]:
    async with database.SessionLocal() as db:
        rows = await db.execute(select(PushToken.token).where(PushToken.user_id == user_id))
        return [t for t in rows.scalars().all() if t]


async def _post_expo(messages: List[Dict[str, Any]]) -> None:
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            config.EXPO_PUSH_URL,
            json=messages,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=15,
        )
        resp.raise_for_status()
        logger.info("Sent %s push notifications: %s", len(messages), resp.text[:500])


async def send_notification(user_id: str, kind: str, payload: Dict[str, Any]) -> None:
    """
    Fire-and-forget push. Never raises: callers schedule it in the background
    and the outcome must not affect the operation that triggered it.
    """
    if not config.PUSH_NOTIFICATIONS_ENABLED:
        logger.debug("Push disabled, skipping %s for user %s", kind, user_id)
        return

    try:
        title, body, data, channel = build_message(kind, payload)
        tokens = await _load_tokens(user_id)
        if not tokens:
            logger.info("No push tokens for user %s, skipping %s notification", user_id, kind)
            return

        messages = [
            {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": data,
                "priority": "high",
                "channelId": channel,
            }
            for token in tokens
        ]
        await _post_expo(messages)
    except Exception as exc:
        logger.error("Failed to send %s notification to user %s: %s", kind, user_id, exc)
