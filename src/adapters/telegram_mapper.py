"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core. Albums arrive as
separate Telethon messages sharing ``grouped_id``; that id becomes the core
media group id.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from telethon.tl import types
from telethon.tl.custom import Message as TelethonMessage

from core.errors import ValidationError
from core.models import Message, ProcessingState

_PEER_TYPES = {
    "PeerChannel": (types.PeerChannel, "channel_id"),
    "PeerChat": (types.PeerChat, "chat_id"),
    "PeerUser": (types.PeerUser, "user_id"),
}


def message_key(chat_id: int, message_id: int) -> str:
    """Message ids are only unique per chat, so the core key includes both."""

    return f"{chat_id}:{message_id}"


def media_group_id_from_message(message: TelethonMessage) -> Optional[str]:
    grouped_id = getattr(message, "grouped_id", None)
    if not grouped_id:
        return None
    return str(grouped_id)


def _peer_from_export(raw: Mapping[str, Any]) -> Any:
    kind = _PEER_TYPES.get(raw.get("_"))
    if kind is None:
        raise ValidationError(f"unsupported peer type: {raw.get('_')}")
    peer_type, key = kind
    return peer_type(int(raw[key]))


def message_from_export(raw: Mapping[str, Any]) -> TelethonMessage:
    """Rebuild a Telethon message from the output of its ``to_dict``/``to_json``.

    Only the fields the core reads are restored: id, peer, date, text and
    ``grouped_id``.
    """

    if raw.get("_") != "Message":
        raise ValidationError(f"not a message export: {raw.get('_')}")
    if "id" not in raw or not isinstance(raw.get("peer_id"), Mapping):
        raise ValidationError("message export needs id and peer_id")

    date = raw.get("date")
    if isinstance(date, str):
        date = datetime.fromisoformat(date)

    return types.Message(
        id=int(raw["id"]),
        peer_id=_peer_from_export(raw["peer_id"]),
        date=date,
        message=raw.get("message") or "",
        grouped_id=raw.get("grouped_id"),
    )


def build_message(message: TelethonMessage, now: Optional[datetime] = None) -> Message:
    """Build a core Message from a Telethon Message."""

    caption = message.raw_text or ""
    media_group_id = media_group_id_from_message(message)
    created_at = message.date or now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        # Telethon dates are UTC; naive values come from hand-built objects.
        created_at = created_at.replace(tzinfo=timezone.utc)

    return Message(
        id=message_key(message.chat_id, message.id),
        chat_id=message.chat_id,
        created_at=created_at,
        correlation_id=str(uuid.uuid4()),
        media_group_id=media_group_id,
        caption=caption or None,
        # Within an album only the captioned item carries the text.
        is_original_caption=bool(media_group_id and caption.strip()),
        processing_state=ProcessingState.INITIALIZED,
    )
