from __future__ import annotations

import pytest

from conftest import BASE_TIME, make_message, sample_content
from core.models import ProcessingState
from core.states import ProcessingStateMachine

S = ProcessingState


@pytest.fixture
def machine(clock) -> ProcessingStateMachine:
    return ProcessingStateMachine(clock)


def test_happy_path_is_monotonic(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.INITIALIZED, caption="Blue Widget #AB022524 x5")

    pending = machine.transition(message, S.PENDING)
    processing = machine.transition(pending.message, S.PROCESSING)
    completed = machine.transition(processing.message, S.COMPLETED, analyzed_content=sample_content())

    assert pending.accepted and processing.accepted and completed.accepted
    assert completed.message.processing_state is S.COMPLETED
    assert completed.message.analyzed_content is not None
    assert completed.changes["updated_at"] == BASE_TIME


def test_completed_requires_content(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.PROCESSING)

    result = machine.transition(message, S.COMPLETED)

    assert not result.accepted
    assert result.message is message
    assert result.changes == {}


def test_error_requires_message_and_bumps_retry_count(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.PROCESSING, retry_count=2)

    assert not machine.transition(message, S.ERROR).accepted

    result = machine.transition(message, S.ERROR, error_message="store down")
    assert result.accepted
    assert result.message.error_message == "store down"
    assert result.message.retry_count == 3


def test_reset_clears_error_but_keeps_retry_count(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.ERROR, retry_count=3, error_message="boom")

    result = machine.reset(message)

    assert result.accepted
    assert result.message.processing_state is S.PENDING
    assert result.message.error_message is None
    assert result.message.retry_count == 3


@pytest.mark.parametrize(
    "current, target",
    [
        (S.COMPLETED, S.PENDING),
        (S.COMPLETED, S.PROCESSING),
        (S.PENDING, S.COMPLETED),
        (S.INITIALIZED, S.PROCESSING),
        (S.ERROR, S.PROCESSING),
        (S.NO_CAPTION, S.PENDING),
    ],
)
def test_illegal_transitions_are_rejected(machine: ProcessingStateMachine, current, target) -> None:
    message = make_message("a", state=current, content=sample_content())

    result = machine.transition(message, target, error_message="x")

    assert not result.accepted
    assert result.message.processing_state is current
    assert "illegal transition" in result.reason


@pytest.mark.parametrize("current", list(ProcessingState))
def test_force_reprocess_reaches_processing_from_any_state(machine: ProcessingStateMachine, current) -> None:
    message = make_message("a", state=current)

    result = machine.transition(message, S.PROCESSING, force=True)

    assert result.accepted
    assert result.message.processing_state is S.PROCESSING


def test_force_does_not_open_other_targets(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.COMPLETED, content=sample_content())

    assert not machine.transition(message, S.PENDING, force=True).accepted


def test_initialized_without_caption_goes_to_no_caption(machine: ProcessingStateMachine) -> None:
    message = make_message("a", state=S.INITIALIZED, group=None)

    assert machine.transition(message, S.NO_CAPTION).accepted


def test_propagate_completes_from_any_state(machine: ProcessingStateMachine) -> None:
    message = make_message("b", state=S.ERROR, error_message="old failure")

    result = machine.propagate(message, sample_content(), is_edited=True)

    assert result.accepted
    assert result.message.processing_state is S.COMPLETED
    assert result.message.error_message is None
    assert result.message.is_edited is True
