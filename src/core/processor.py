"""Core caption processing flow.

This module is integration-agnostic. It only relies on ports for storage and
auditing, enabling future frontends or adapters without changes here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from core import audit
from core.caption_parser import CaptionParser
from core.errors import PersistenceFailure, ValidationError
from core.media_group_sync import MediaGroupSynchronizer, SyncResult
from core.models import AnalyzedContent, Message, ProcessingState
from core.ports import AuditSink, Clock, MessageStore
from core.retry import RetryExecutor
from core.states import ProcessingStateMachine, TransitionResult

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingOutcome:
    """What happened to one message."""

    message_id: str
    state: ProcessingState
    analyzed_content: Optional[AnalyzedContent] = None
    group_sync: Optional[SyncResult] = None
    skipped_reason: Optional[str] = None


class CaptionProcessor:
    """Orchestrates parsing, state transitions, persistence and group sync."""

    def __init__(
        self,
        store: MessageStore,
        synchronizer: MediaGroupSynchronizer,
        *,
        parser: Optional[CaptionParser] = None,
        retry: Optional[RetryExecutor] = None,
        state_machine: Optional[ProcessingStateMachine] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._sync = synchronizer
        self._parser = parser or CaptionParser(clock=clock)
        self._retry = retry or RetryExecutor()
        self._states = state_machine or ProcessingStateMachine(clock)
        self._audit = audit_sink
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(timezone.utc)

    async def _write(self, message: Message, changes: dict[str, Any], operation: str) -> None:
        """Write fields through the retry executor; exhaustion is a PersistenceFailure."""

        async def write() -> None:
            await self._store.update(message.id, changes)

        outcome = await self._retry.execute(write, name=operation, correlation_id=message.correlation_id)
        if not outcome.success:
            raise PersistenceFailure(
                f"{operation} for {message.id} failed: {outcome.error}",
                attempts=outcome.attempts,
                cause=outcome.error,
            )

    async def _persist(self, message: Message, transition: TransitionResult, operation: str) -> Message:
        await self._write(message, transition.changes, operation)
        return transition.message

    async def _advance(self, message: Message, target: ProcessingState, **kwargs) -> Optional[Message]:
        transition = self._states.transition(message, target, **kwargs)
        if not transition.accepted:
            return None
        return await self._persist(message, transition, f"transition_{target.value}")

    async def _load(self, message_id: str) -> Message:
        if not message_id:
            raise ValidationError("message id is required")
        message = await self._store.get(message_id)
        if message is None:
            raise ValidationError(f"message {message_id} not found")
        return message

    async def handle(self, message_id: str, force: bool = False) -> ProcessingOutcome:
        """Process one message through the caption pipeline."""

        message = await self._load(message_id)
        return await self._process(message, force=force)

    async def edit_caption(self, message_id: str, caption: Optional[str]) -> ProcessingOutcome:
        """Apply a caption edit and reprocess the message.

        The previous caption and analyzed content are archived into
        ``edit_history`` before the new caption is parsed. A grouped message
        then re-syncs its group with edit history, so siblings carry the same
        trail. An edit that does not change the caption is a no-op.
        """

        message = await self._load(message_id)
        if (caption or "") == (message.caption or ""):
            return ProcessingOutcome(
                message_id=message.id,
                state=message.processing_state,
                analyzed_content=message.analyzed_content,
                skipped_reason="caption unchanged",
            )

        edited_at = self._now()
        entry = {
            "edited_at": edited_at.isoformat(),
            "previous_caption": message.caption,
            "previous_analyzed_content": (
                message.analyzed_content.to_dict() if message.analyzed_content is not None else None
            ),
        }
        changes: dict[str, Any] = {
            "caption": caption,
            "edit_history": message.edit_history + (entry,),
            "is_edited": True,
            "updated_at": edited_at,
        }
        if message.in_group and (caption or "").strip():
            changes["is_original_caption"] = True
        await self._write(message, changes, "store_caption_edit")
        message = replace(message, **changes)

        LOGGER.info(
            "Caption of message %s edited (edit #%s) [%s]",
            message.id,
            message.edit_count,
            message.correlation_id,
        )
        await audit.record_safely(
            self._audit,
            audit.CAPTION_EDITED,
            message.id,
            message.correlation_id,
            {"edit_count": message.edit_count, "media_group_id": message.media_group_id},
        )
        return await self._process(message, force=True, sync_edit_history=True)

    async def _process(
        self,
        message: Message,
        *,
        force: bool,
        sync_edit_history: Optional[bool] = None,
    ) -> ProcessingOutcome:
        if not (message.caption or "").strip():
            return await self._handle_without_caption(message)

        if message.processing_state is ProcessingState.COMPLETED and not force:
            return ProcessingOutcome(
                message_id=message.id,
                state=message.processing_state,
                analyzed_content=message.analyzed_content,
                skipped_reason="already completed",
            )

        if message.processing_state is ProcessingState.INITIALIZED:
            message = await self._advance(message, ProcessingState.PENDING) or message

        claimed = await self._advance(message, ProcessingState.PROCESSING, force=force)
        if claimed is None:
            return ProcessingOutcome(
                message_id=message.id,
                state=message.processing_state,
                analyzed_content=message.analyzed_content,
                skipped_reason=f"cannot claim message in state {message.processing_state.value}",
            )
        message = claimed

        await audit.record_safely(
            self._audit,
            audit.PROCESSING_STARTED,
            message.id,
            message.correlation_id,
            {"forced": force, "media_group_id": message.media_group_id},
        )

        content = self._parser.parse(message.caption)
        completed = self._states.transition(message, ProcessingState.COMPLETED, analyzed_content=content)
        try:
            message = await self._persist(message, completed, "store_analyzed_content")
        except PersistenceFailure as exc:
            await self._fail(message, exc)
            raise

        LOGGER.info(
            "Processed message %s: confidence=%s fallbacks=%s [%s]",
            message.id,
            content.parsing_metadata.confidence,
            list(content.parsing_metadata.fallbacks_used),
            message.correlation_id,
        )
        await audit.record_safely(
            self._audit,
            audit.PROCESSING_COMPLETED,
            message.id,
            message.correlation_id,
            {
                "confidence": content.parsing_metadata.confidence,
                "fallbacks_used": list(content.parsing_metadata.fallbacks_used),
                "needs_escalation": content.parsing_metadata.needs_escalation,
            },
        )

        group_sync = None
        if message.in_group:
            group_sync = await self._sync.sync(
                message.media_group_id,
                explicit_source=message.id,
                force_sync=True if force else None,
                sync_edit_history=sync_edit_history,
                correlation_id=message.correlation_id,
            )

        return ProcessingOutcome(
            message_id=message.id,
            state=message.processing_state,
            analyzed_content=content,
            group_sync=group_sync,
        )

    async def _handle_without_caption(self, message: Message) -> ProcessingOutcome:
        # Grouped messages without caption get their content from the group source.
        if message.in_group:
            return ProcessingOutcome(
                message_id=message.id,
                state=message.processing_state,
                analyzed_content=message.analyzed_content,
                skipped_reason="no caption, awaiting group sync",
            )

        updated = await self._advance(message, ProcessingState.NO_CAPTION)
        state = updated.processing_state if updated else message.processing_state
        return ProcessingOutcome(message_id=message.id, state=state, skipped_reason="no caption")

    async def _fail(self, message: Message, error: PersistenceFailure) -> None:
        """Best-effort move into the error state after a persistence failure."""

        failed = self._states.transition(message, ProcessingState.ERROR, error_message=str(error))
        try:
            await self._store.update(message.id, failed.changes)
        except Exception:
            LOGGER.exception("Could not record error state for %s [%s]", message.id, message.correlation_id)
        await audit.record_safely(
            self._audit,
            audit.PROCESSING_FAILED,
            message.id,
            message.correlation_id,
            {"attempts": error.attempts, "retry_count": message.retry_count + 1},
            error_message=str(error),
        )
