"""Fire-and-forget affiliate notifications.

Commission transitions emit an event; delivery (email, push) belongs to the
notification module behind NOTIFICATION_WEBHOOK_URL. A failed delivery is
logged and never propagates into the ledger operation that fired it.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)

# Recent events, newest last (operator debugging and tests)
_recent_events: deque[dict] = deque(maxlen=500)
_pending: set[asyncio.Task] = set()


def recent_events() -> list[dict]:
    return list(_recent_events)


def clear_events() -> None:
    _recent_events.clear()


async def _deliver(event: dict) -> None:
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.post(settings.NOTIFICATION_WEBHOOK_URL, json=event)
        if resp.status_code >= 400:
            logger.warning("Notification %s rejected: HTTP %s", event["type"], resp.status_code)
    except httpx.HTTPError as e:
        logger.warning("Notification %s failed: %s", event["type"], e)


def fire_event(event_type: str, **data: Any) -> dict:
    """Record an event and schedule outbound delivery when configured."""
    event = {
        "type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    _recent_events.append(event)
    logger.info("Event %s %s", event_type, data.get("commission_id", ""))

    if settings.NOTIFICATION_WEBHOOK_URL:
        try:
            task = asyncio.get_running_loop().create_task(_deliver(event))
        except RuntimeError:
            logger.debug("No running loop, notification %s not delivered", event_type)
        else:
            _pending.add(task)
            task.add_done_callback(_pending.discard)
    return event
