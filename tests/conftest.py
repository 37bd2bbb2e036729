from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import pytest

from core.caption_parser import parse_caption
from core.errors import StoreError, TransientFailure
from core.models import AnalyzedContent, Message, ProcessingState

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.current = now
        self.ticks = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.ticks


class RecordingSleeper:
    """Records requested sleeps and advances the fake clock instead of waiting."""

    def __init__(self, clock: Optional[FixedClock] = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.ticks += seconds


class FakeStore:
    def __init__(self, messages: Optional[list[Message]] = None) -> None:
        self.messages: dict[str, Message] = {m.id: m for m in messages or []}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        # message id -> number of upcoming update calls that should fail
        self.failures: dict[str, int] = {}
        self.failure_error: type[Exception] = TransientFailure

    def fail_next(self, message_id: str, times: int = 1, error: type[Exception] = TransientFailure) -> None:
        self.failures[message_id] = times
        self.failure_error = error

    async def get(self, message_id: str) -> Optional[Message]:
        return self.messages.get(message_id)

    async def list_by_group(self, group_id: str) -> list[Message]:
        members = [m for m in self.messages.values() if m.media_group_id == group_id]
        return sorted(members, key=lambda m: (m.created_at, m.id))

    async def list_by_state(self, state: ProcessingState) -> list[Message]:
        return [m for m in self.messages.values() if m.processing_state is state]

    async def list_all(self) -> list[Message]:
        return list(self.messages.values())

    async def update(self, message_id: str, fields: Mapping[str, Any]) -> None:
        remaining = self.failures.get(message_id, 0)
        if remaining:
            self.failures[message_id] = remaining - 1
            raise self.failure_error(f"write to {message_id} failed")
        self.updates.append((message_id, dict(fields)))
        self.messages[message_id] = replace(self.messages[message_id], **fields)


class FakeAuditSink:
    def __init__(self, broken: bool = False) -> None:
        self.events: list[tuple[str, str, str, dict, Optional[str]]] = []
        self._broken = broken

    async def record(self, event_type, entity_id, correlation_id, metadata, error_message=None) -> None:
        if self._broken:
            raise StoreError("audit table unavailable")
        self.events.append((event_type, entity_id, correlation_id, dict(metadata), error_message))

    def types(self) -> list[str]:
        return [event[0] for event in self.events]


def make_message(
    message_id: str,
    *,
    group: Optional[str] = "g1",
    state: ProcessingState = ProcessingState.PENDING,
    caption: Optional[str] = None,
    content: Optional[AnalyzedContent] = None,
    minutes: int = 0,
    original: bool = False,
    **extra: Any,
) -> Message:
    return Message(
        id=message_id,
        chat_id=100,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        correlation_id=f"corr-{message_id}",
        media_group_id=group,
        caption=caption,
        is_original_caption=original,
        analyzed_content=content,
        processing_state=state,
        **extra,
    )


def sample_content(caption: str = "Blue Widget #AB022524 x5 (fragile)") -> AnalyzedContent:
    return parse_caption(caption, now=BASE_TIME)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def sleeper(clock: FixedClock) -> RecordingSleeper:
    return RecordingSleeper(clock)
