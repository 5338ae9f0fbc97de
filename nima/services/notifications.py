"""
nima/services/notifications.py
──────────────────────────────
Best-effort push notifications through the Expo push API.

Nothing here raises on delivery problems: a failed push is logged and
the caller carries on.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlmodel import select

from nima.core.config import get_settings
from nima.database import session_scope
from nima.models import PushToken

logger = logging.getLogger(__name__)
settings = get_settings()


def active_tokens(user_id: int) -> List[str]:
    with session_scope() as session:
        return list(
            session.exec(
                select(PushToken.token).where(
                    PushToken.user_id == user_id,
                    PushToken.is_active == True,  # noqa: E712
                )
            ).all()
        )


async def send_push(
    tokens: List[str],
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    channel_id: str = "default",
) -> int:
    """Send one message per token. Returns how many messages were accepted for delivery."""
    if not tokens:
        logger.info("No push tokens to send to")
        return 0

    messages = [
        {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
            "priority": "high",
            "channelId": channel_id,
        }
        for token in tokens
    ]
    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.EXPO_PUSH_URL,
                json=messages,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("Failed to send %d push notification(s): %s", len(messages), exc)
        return 0

    logger.info("Sent %d push notification(s)", len(messages))
    return len(messages)


async def send_onboarding_looks_ready(user_id: int, success_count: int) -> int:
    tokens = active_tokens(user_id)
    if not tokens:
        logger.info("No push tokens for user %s, skipping onboarding looks notification", user_id)
        return 0

    if success_count >= 3:
        body = "We've created 3 personalized outfits just for you. Come see yourself in them!"
    else:
        plural = "" if success_count == 1 else "s"
        body = f"We've created {success_count} personalized outfit{plural} for you. Tap to check them out!"
    return await send_push(
        tokens,
        "Your First Looks Are Ready!",
        body,
        {"type": "onboarding_looks_ready", "successCount": success_count},
        channel_id="looks",
    )


async def send_try_on_ready(user_id: int, try_on_id: int, item_name: str) -> int:
    return await send_push(
        active_tokens(user_id),
        "Your Try-On Is Ready",
        f"See how {item_name} looks on you.",
        {"type": "try_on_ready", "itemTryOnId": try_on_id},
        channel_id="looks",
    )


async def send_low_credit(user_id: int, remaining: int) -> int:
    if remaining <= 0:
        body = "You're out of credits. Top up to keep creating looks."
    else:
        plural = "" if remaining == 1 else "s"
        body = f"You have {remaining} credit{plural} left this week."
    return await send_push(
        active_tokens(user_id),
        "Running Low on Credits",
        body,
        {"type": "low_credits", "remaining": remaining},
    )
