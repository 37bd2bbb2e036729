"""Processing state machine (core domain).

Legal moves along the analysis lifecycle::

    initialized -> pending -> processing -> completed
                                         -> error -> pending (explicit reset)
    initialized -> no_caption

Force-reprocessing may move any state to processing, and group propagation
may mark any member completed once it holds analyzed content. Everything else
is rejected and leaves the message untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from core.models import AnalyzedContent, Message, ProcessingState
from core.ports import Clock

LOGGER = logging.getLogger(__name__)

_S = ProcessingState

TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    _S.INITIALIZED: frozenset({_S.PENDING, _S.NO_CAPTION}),
    _S.PENDING: frozenset({_S.PROCESSING}),
    _S.PROCESSING: frozenset({_S.COMPLETED, _S.ERROR}),
    _S.ERROR: frozenset({_S.PENDING}),
    _S.COMPLETED: frozenset(),
    _S.NO_CAPTION: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a transition request.

    ``changes`` holds the fields to persist when accepted; ``message`` is the
    message with those changes applied (or the original when rejected).
    """

    accepted: bool
    message: Message
    changes: dict[str, Any]
    reason: Optional[str] = None


class ProcessingStateMachine:
    """Validates and applies processing state transitions."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(timezone.utc)

    def can_transition(self, current: ProcessingState, target: ProcessingState) -> bool:
        return target in TRANSITIONS[current]

    def _reject(self, message: Message, target: ProcessingState, reason: str) -> TransitionResult:
        LOGGER.warning(
            "Rejected transition %s -> %s for message %s [%s]: %s",
            message.processing_state.value,
            target.value,
            message.id,
            message.correlation_id,
            reason,
        )
        return TransitionResult(accepted=False, message=message, changes={}, reason=reason)

    def _accept(self, message: Message, changes: dict[str, Any]) -> TransitionResult:
        changes["updated_at"] = self._now()
        return TransitionResult(accepted=True, message=replace(message, **changes), changes=changes)

    def transition(
        self,
        message: Message,
        target: ProcessingState,
        *,
        analyzed_content: Optional[AnalyzedContent] = None,
        error_message: Optional[str] = None,
        force: bool = False,
    ) -> TransitionResult:
        """Request a move of ``message`` to ``target``.

        Postconditions are enforced here: completing requires analyzed
        content, failing requires an error message and bumps retry_count.
        """

        current = message.processing_state
        forced = force and target is ProcessingState.PROCESSING
        if not forced and not self.can_transition(current, target):
            return self._reject(message, target, f"illegal transition {current.value} -> {target.value}")

        changes: dict[str, Any] = {"processing_state": target}

        if target is ProcessingState.COMPLETED:
            content = analyzed_content or message.analyzed_content
            if content is None:
                return self._reject(message, target, "completed requires analyzed content")
            changes["analyzed_content"] = content
            changes["error_message"] = None
        elif target is ProcessingState.ERROR:
            if not error_message:
                return self._reject(message, target, "error requires an error message")
            changes["error_message"] = error_message
            changes["retry_count"] = message.retry_count + 1
        elif target is ProcessingState.PENDING and current is ProcessingState.ERROR:
            # Explicit reset keeps retry_count for backoff-aware reattempts.
            changes["error_message"] = None

        if forced and current is not ProcessingState.PENDING:
            LOGGER.info(
                "Force reprocessing message %s from %s [%s]",
                message.id,
                current.value,
                message.correlation_id,
            )
        return self._accept(message, changes)

    def reset(self, message: Message) -> TransitionResult:
        """Explicitly move an errored message back to pending."""

        return self.transition(message, ProcessingState.PENDING)

    def propagate(self, message: Message, content: AnalyzedContent, **extra: Any) -> TransitionResult:
        """Mark a media group member completed with content from its source.

        Allowed from every state; ``extra`` carries additional fields written
        alongside (edit history, edited flag).
        """

        if content is None:
            return self._reject(message, ProcessingState.COMPLETED, "propagation requires analyzed content")
        changes: dict[str, Any] = {
            "processing_state": ProcessingState.COMPLETED,
            "analyzed_content": content,
            "error_message": None,
        }
        changes.update(extra)
        return self._accept(message, changes)
