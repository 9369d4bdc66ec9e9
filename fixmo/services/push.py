"""
Expo push notifications for the mobile apps.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.config import get_settings
from fixmo.models.push_token import PushToken

logger = logging.getLogger(__name__)


async def get_user_push_tokens(db: AsyncSession, user_id: uuid.UUID, user_type: str) -> list[PushToken]:
    result = await db.execute(
        select(PushToken).where(
            and_(
                PushToken.user_id == user_id,
                PushToken.user_type == user_type,
                PushToken.is_active.is_(True),
            )
        )
    )
    return list(result.scalars().all())


async def send_push_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_type: str,
    title: str,
    body: str,
    data: Optional[dict[str, Any]] = None,
) -> dict:
    """
    Push to every active device of one user.

    Returns: {"sent": int, "status": str, "error": str|None}
    """
    tokens = await get_user_push_tokens(db, user_id, user_type)
    if not tokens:
        return {"sent": 0, "status": "skipped", "error": None}

    settings = get_settings()
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if settings.expo_access_token:
        headers["Authorization"] = f"Bearer {settings.expo_access_token}"

    messages = [
        {
            "to": token.expo_push_token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
        }
        for token in tokens
    ]

    try:
        async with httpx.AsyncClient(timeout=settings.push_timeout_seconds) as client:
            response = await client.post(settings.expo_push_url, headers=headers, json=messages)
            response.raise_for_status()
            tickets = response.json().get("data", [])
    except Exception as e:
        logger.error("Push notification failed for %s %s: %s", user_type, str(user_id)[:8], str(e))
        return {"sent": 0, "status": "error", "error": str(e)}

    # Expo reports per-device failures in the tickets
    now = datetime.now(timezone.utc)
    sent = 0
    for token, ticket in zip(tokens, tickets):
        if ticket.get("status") == "ok":
            token.last_used_at = now
            sent += 1
        elif ticket.get("details", {}).get("error") == "DeviceNotRegistered":
            token.is_active = False
            logger.info("Deactivated unregistered push token for %s %s", user_type, str(user_id)[:8])

    return {"sent": sent, "status": "sent", "error": None}
