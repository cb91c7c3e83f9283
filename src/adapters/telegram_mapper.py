"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core pipeline.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from core.models import InboundMessage

LOGGER = logging.getLogger(__name__)


def sender_key(event: Any) -> str:
    """Return the stable sender identity used for rate limits and replies."""

    return str(event.chat_id)


def display_name(sender: Any) -> Optional[str]:
    if sender is None:
        return None
    first = getattr(sender, "first_name", None)
    last = getattr(sender, "last_name", None)
    if first or last:
        return " ".join(part for part in [first, last] if part)
    username = getattr(sender, "username", None)
    if username:
        return str(username)
    title = getattr(sender, "title", None)
    return str(title) if title else None


async def build_inbound(event: Any) -> InboundMessage:
    """Build a core InboundMessage from a Telethon NewMessage event."""

    is_group = not getattr(event, "is_private", False)
    sender = None
    # Group messages are dropped by the core, so skip the extra lookup.
    if not is_group:
        try:
            sender = await event.get_sender()
        except Exception:
            LOGGER.warning("Could not resolve sender for chat %s", getattr(event, "chat_id", None))

    return InboundMessage(
        sender_id=sender_key(event),
        text=getattr(event, "raw_text", None) or "",
        is_group=is_group,
        is_self=bool(getattr(event, "out", False)),
        sender_display_name=display_name(sender),
    )
