"""Recovery sweep and processing statistics (core domain)."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from core import audit
from core.config import RecoveryConfig
from core.errors import PersistenceFailure
from core.media_group_sync import MediaGroupSynchronizer, SyncResult
from core.models import Message, ProcessingState
from core.ports import AuditSink, Clock, MessageStore
from core.processor import CaptionProcessor, ProcessingOutcome
from core.states import ProcessingStateMachine

LOGGER = logging.getLogger(__name__)

STALLED_ERROR = "stalled processing"


@dataclass(frozen=True)
class SweepReport:
    stalled_ids: tuple[str, ...] = ()
    reset_ids: tuple[str, ...] = ()
    exhausted_ids: tuple[str, ...] = ()
    reprocessed: tuple[ProcessingOutcome, ...] = ()
    failed_ids: tuple[str, ...] = ()
    group_syncs: tuple[SyncResult, ...] = field(default_factory=tuple)


def _awaits_own_parse(message: Message) -> bool:
    return bool((message.caption or "").strip()) and message.processing_state is not ProcessingState.COMPLETED


class RecoverySweep:
    """Repairs messages that got stuck on their way through the lifecycle.

    1. processing claims older than the stall threshold become errors
    2. errors still under the retry limit are reset to pending
    3. reset messages and captioned initialized/pending ones are reprocessed
    4. groups with unconverged members are re-synced, unless their captioned
       member has not completed its own parse yet
    """

    def __init__(
        self,
        store: MessageStore,
        synchronizer: MediaGroupSynchronizer,
        *,
        processor: Optional[CaptionProcessor] = None,
        config: Optional[RecoveryConfig] = None,
        state_machine: Optional[ProcessingStateMachine] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._sync = synchronizer
        self._processor = processor
        self._config = config or RecoveryConfig()
        self._states = state_machine or ProcessingStateMachine(clock)
        self._audit = audit_sink
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(timezone.utc)

    async def run(self) -> SweepReport:
        stalled = await self._fail_stalled()
        reset, exhausted = await self._reset_errors()
        reprocessed, failed = await self._reprocess(reset)
        syncs = await self._resync_groups()
        LOGGER.info(
            "Recovery sweep: stalled=%s reset=%s exhausted=%s reprocessed=%s failed=%s groups=%s",
            len(stalled),
            len(reset),
            len(exhausted),
            len(reprocessed),
            len(failed),
            len(syncs),
        )
        return SweepReport(
            stalled_ids=tuple(stalled),
            reset_ids=tuple(reset),
            exhausted_ids=tuple(exhausted),
            reprocessed=tuple(reprocessed),
            failed_ids=tuple(failed),
            group_syncs=tuple(syncs),
        )

    async def _fail_stalled(self) -> list[str]:
        cutoff = self._now() - timedelta(minutes=self._config.stalled_after_minutes)
        stalled: list[str] = []
        for message in await self._store.list_by_state(ProcessingState.PROCESSING):
            touched = message.updated_at or message.created_at
            if touched > cutoff:
                continue
            transition = self._states.transition(message, ProcessingState.ERROR, error_message=STALLED_ERROR)
            if transition.accepted:
                await self._store.update(message.id, transition.changes)
                stalled.append(message.id)
        return stalled

    async def _reset_errors(self) -> tuple[list[str], list[str]]:
        reset: list[str] = []
        exhausted: list[str] = []
        for message in await self._store.list_by_state(ProcessingState.ERROR):
            if message.retry_count >= self._config.max_retry_count:
                exhausted.append(message.id)
                continue
            transition = self._states.reset(message)
            if not transition.accepted:
                continue
            await self._store.update(message.id, transition.changes)
            reset.append(message.id)
            await audit.record_safely(
                self._audit,
                audit.STATE_RESET,
                message.id,
                message.correlation_id,
                {"retry_count": message.retry_count, "previous_error": message.error_message},
            )
        if exhausted:
            LOGGER.warning("%s messages exceeded the retry limit: %s", len(exhausted), exhausted)
        return reset, exhausted

    async def _reprocess(self, reset: list[str]) -> tuple[list[ProcessingOutcome], list[str]]:
        if self._processor is None:
            return [], []

        candidates = list(reset)
        for state in (ProcessingState.INITIALIZED, ProcessingState.PENDING):
            for message in await self._store.list_by_state(state):
                if (message.caption or "").strip() and message.id not in candidates:
                    candidates.append(message.id)

        outcomes: list[ProcessingOutcome] = []
        failed: list[str] = []
        for message_id in candidates:
            try:
                outcomes.append(await self._processor.handle(message_id))
            except PersistenceFailure as exc:
                # The processor already moved the message to error.
                LOGGER.warning("Reprocessing %s failed: %s", message_id, exc)
                failed.append(message_id)
        return outcomes, failed

    async def _resync_groups(self) -> list[SyncResult]:
        groups: dict[str, list[Message]] = {}
        for message in await self._store.list_all():
            if message.media_group_id:
                groups.setdefault(message.media_group_id, []).append(message)

        results: list[SyncResult] = []
        for group_id, members in sorted(groups.items()):
            if all(m.processing_state is ProcessingState.COMPLETED for m in members):
                continue
            if any(_awaits_own_parse(m) for m in members):
                LOGGER.info("Skipping re-sync of group %s: its captioned member is not parsed yet", group_id)
                continue
            results.append(await self._sync.sync(group_id))
        return results


async def processing_stats(store: MessageStore) -> dict[str, object]:
    """Return message counts by processing state and by content markers."""

    messages = await store.list_all()
    by_state = Counter(message.processing_state.value for message in messages)
    return {
        "total_messages": len(messages),
        "by_state": {state.value: by_state.get(state.value, 0) for state in ProcessingState},
        "with_caption": sum(1 for m in messages if (m.caption or "").strip()),
        "with_analyzed_content": sum(1 for m in messages if m.analyzed_content is not None),
        "with_media_group_id": sum(1 for m in messages if m.media_group_id),
    }
