"""Media group synchronization (core domain).

A media group arrives as several messages of which only one carries the
caption. The synchronizer picks a canonical source inside the group and
copies its analyzed content and completed state onto every sibling.

Sibling writes fan out concurrently and fail independently: one failed write
never cancels the others and is reported in the per-sibling results.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from core import audit
from core.config import SyncConfig
from core.errors import ErrorKind, NoSourceAvailable, ValidationError, classify_error
from core.models import Message, ProcessingState, SyncMetadata
from core.ports import AuditSink, Clock, MessageStore
from core.retry import RetryExecutor
from core.states import ProcessingStateMachine

LOGGER = logging.getLogger(__name__)


class SiblingStatus(str, Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SiblingSyncResult:
    message_id: str
    status: SiblingStatus
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one group sync.

    ``success`` is false only when no source could be used; failed sibling
    writes show up in ``sibling_results`` and keep ``success`` true.
    """

    group_id: str
    success: bool
    source_id: Optional[str]
    updated_count: int
    sibling_results: tuple[SiblingSyncResult, ...] = field(default_factory=tuple)
    error: Optional[str] = None

    @property
    def failed(self) -> tuple[SiblingSyncResult, ...]:
        return tuple(r for r in self.sibling_results if r.status is SiblingStatus.FAILED)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)


def select_source(members: Iterable[Message]) -> Optional[Message]:
    """Pick the canonical source of a group.

    The earliest-created completed member with non-empty content wins; on a
    creation-time tie the member that physically carried the caption wins.
    """

    candidates = [
        member
        for member in members
        if member.processing_state is ProcessingState.COMPLETED and member.has_content
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda m: (m.created_at, not m.is_original_caption, m.id))


class MediaGroupSynchronizer:
    """Propagates a canonical message's content to the rest of its group."""

    def __init__(
        self,
        store: MessageStore,
        *,
        audit_sink: Optional[AuditSink] = None,
        retry: Optional[RetryExecutor] = None,
        state_machine: Optional[ProcessingStateMachine] = None,
        config: Optional[SyncConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._retry = retry
        self._states = state_machine or ProcessingStateMachine(clock)
        self._config = config or SyncConfig()
        self._clock = clock
        # One lock per group serializes syncs of the same group in this process.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(timezone.utc)

    def _lock_for(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[group_id] = lock
        return lock

    async def sync(
        self,
        group_id: str,
        *,
        explicit_source: Optional[str] = None,
        force_sync: Optional[bool] = None,
        sync_edit_history: Optional[bool] = None,
        correlation_id: Optional[str] = None,
    ) -> SyncResult:
        """Converge every member of ``group_id`` on the canonical content.

        Raises ValidationError for a missing group id or an explicit source
        outside the group. A group without a usable source returns a failed
        result instead of raising.
        """

        if not group_id:
            raise ValidationError("media group id is required")

        force = self._config.force_sync if force_sync is None else force_sync
        with_history = self._config.sync_edit_history if sync_edit_history is None else sync_edit_history

        lock = self._lock_for(group_id)
        async with lock:
            members = await self._store.list_by_group(group_id)
            correlation_id = correlation_id or _group_correlation_id(members)

            try:
                source = self._resolve_source(group_id, members, explicit_source)
            except NoSourceAvailable as exc:
                LOGGER.warning("%s [%s]", exc, correlation_id)
                await audit.record_safely(
                    self._audit,
                    audit.GROUP_SYNC_FAILED,
                    group_id,
                    correlation_id,
                    {"media_group_id": group_id, "member_count": len(members)},
                    error_message=str(exc),
                )
                return SyncResult(
                    group_id=group_id,
                    success=False,
                    source_id=None,
                    updated_count=0,
                    error=str(exc),
                )

            siblings = [member for member in members if member.id != source.id]
            sync_timestamp = self._now()
            results = await asyncio.gather(
                *(
                    self._sync_sibling(
                        source,
                        sibling,
                        group_size=len(members),
                        sync_timestamp=sync_timestamp,
                        force=force,
                        with_history=with_history,
                        correlation_id=correlation_id,
                    )
                    for sibling in siblings
                )
            )

        result = SyncResult(
            group_id=group_id,
            success=True,
            source_id=source.id,
            updated_count=sum(1 for r in results if r.status is SiblingStatus.UPDATED),
            sibling_results=tuple(results),
        )
        LOGGER.info(
            "Synced media group %s from %s: updated=%s skipped=%s failed=%s [%s]",
            group_id,
            source.id,
            result.updated_count,
            sum(1 for r in results if r.status is SiblingStatus.SKIPPED),
            len(result.failed),
            correlation_id,
        )
        await audit.record_safely(
            self._audit,
            audit.GROUP_SYNCED,
            source.id,
            correlation_id,
            {
                "media_group_id": group_id,
                "updated_count": result.updated_count,
                "failed_ids": [r.message_id for r in result.failed],
                "forced_sync": force,
                "synced_edit_history": with_history,
            },
        )
        return result

    def _resolve_source(
        self,
        group_id: str,
        members: list[Message],
        explicit_source: Optional[str],
    ) -> Message:
        if not members:
            raise NoSourceAvailable(group_id, "group has no members")

        if explicit_source is None:
            source = select_source(members)
            if source is None:
                raise NoSourceAvailable(group_id)
            return source

        source = next((member for member in members if member.id == explicit_source), None)
        if source is None:
            raise ValidationError(f"message {explicit_source} is not part of media group {group_id}")
        if not source.has_content:
            raise NoSourceAvailable(group_id, f"source {explicit_source} has no analyzed content")
        return source

    def _already_converged(self, source: Message, sibling: Message, with_history: bool) -> bool:
        if sibling.processing_state is not ProcessingState.COMPLETED:
            return False
        if not source.analyzed_content.equivalent_to(sibling.analyzed_content):
            return False
        return not with_history or sibling.edit_history == source.edit_history

    async def _sync_sibling(
        self,
        source: Message,
        sibling: Message,
        *,
        group_size: int,
        sync_timestamp: datetime,
        force: bool,
        with_history: bool,
        correlation_id: str,
    ) -> SiblingSyncResult:
        if not force and self._already_converged(source, sibling, with_history):
            return SiblingSyncResult(sibling.id, SiblingStatus.SKIPPED)

        content = source.analyzed_content.with_sync(
            SyncMetadata(
                group_message_count=group_size,
                source_message_id=source.id,
                sync_timestamp=sync_timestamp,
                is_original_caption=sibling.is_original_caption,
            )
        )
        extra = {}
        if with_history:
            extra = {"edit_history": source.edit_history, "is_edited": source.is_edited}
        transition = self._states.propagate(sibling, content, **extra)

        async def write() -> None:
            await self._store.update(sibling.id, transition.changes)

        if self._retry is not None and self._config.retry_writes:
            outcome = await self._retry.execute(
                write,
                name=f"sync_sibling:{sibling.id}",
                correlation_id=correlation_id,
            )
            if outcome.success:
                return SiblingSyncResult(sibling.id, SiblingStatus.UPDATED, attempts=outcome.attempts)
            return SiblingSyncResult(
                sibling.id,
                SiblingStatus.FAILED,
                error=str(outcome.error),
                error_kind=outcome.error_kind,
                attempts=outcome.attempts,
            )

        try:
            await write()
        except Exception as exc:
            LOGGER.warning("Sync write to %s failed [%s]: %s", sibling.id, correlation_id, exc)
            return SiblingSyncResult(
                sibling.id,
                SiblingStatus.FAILED,
                error=str(exc),
                error_kind=classify_error(exc),
                attempts=1,
            )
        return SiblingSyncResult(sibling.id, SiblingStatus.UPDATED, attempts=1)


def _group_correlation_id(members: list[Message]) -> str:
    for member in members:
        if member.is_original_caption and member.correlation_id:
            return member.correlation_id
    return str(uuid.uuid4())
