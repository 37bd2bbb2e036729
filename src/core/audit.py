"""Audit event names and the fire-and-forget recording helper."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from core.ports import AuditSink

LOGGER = logging.getLogger(__name__)

PROCESSING_STARTED = "message_processing_started"
PROCESSING_COMPLETED = "message_processing_completed"
PROCESSING_FAILED = "message_processing_failed"
CAPTION_EDITED = "message_caption_edited"
GROUP_SYNCED = "media_group_synced"
GROUP_SYNC_FAILED = "media_group_sync_failed"
STATE_RESET = "processing_state_reset"


async def record_safely(
    sink: Optional[AuditSink],
    event_type: str,
    entity_id: str,
    correlation_id: str,
    metadata: Optional[Mapping[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
    """Record an audit event; a failing sink is logged and never re-raised."""

    if sink is None:
        return
    try:
        await sink.record(event_type, entity_id, correlation_id, dict(metadata or {}), error_message)
    except Exception:
        LOGGER.exception("Audit record %s for %s failed [%s]", event_type, entity_id, correlation_id)
