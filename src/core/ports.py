"""Ports (interfaces) used by the core.

Ports define the minimal contracts for storage, auditing and time so that the
core can be reused with different backends and driven deterministically in
tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from core.models import Message, ProcessingState


class MessageStore(Protocol):
    """Message persistence required by the core.

    Implementations raise StoreError on failure and ValidationError for
    unknown ids or fields.
    """

    async def get(self, message_id: str) -> Optional[Message]:
        ...

    async def list_by_group(self, group_id: str) -> list[Message]:
        ...

    async def update(self, message_id: str, fields: Mapping[str, Any]) -> None:
        ...

    async def list_by_state(self, state: ProcessingState) -> list[Message]:
        ...

    async def list_all(self) -> list[Message]:
        ...


class AuditSink(Protocol):
    """Append-only audit trail. Callers never let a failure here escape."""

    async def record(
        self,
        event_type: str,
        entity_id: str,
        correlation_id: str,
        metadata: Mapping[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, for measuring durations."""

        ...


class Sleeper(Protocol):
    async def __call__(self, seconds: float) -> None:
        ...
