from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import BASE_TIME, FakeAuditSink, FakeStore, make_message, sample_content
from core import audit
from core.caption_parser import CaptionParser
from core.config import RecoveryConfig, RetryConfig
from core.media_group_sync import MediaGroupSynchronizer
from core.models import ProcessingState
from core.processor import CaptionProcessor
from core.recovery import STALLED_ERROR, RecoverySweep, processing_stats
from core.retry import RetryExecutor

S = ProcessingState


def _sweep(store: FakeStore, clock, sink=None, reprocess: bool = False, **config) -> RecoverySweep:
    synchronizer = MediaGroupSynchronizer(store, clock=clock)
    processor = None
    if reprocess:
        processor = CaptionProcessor(store, synchronizer, parser=CaptionParser(clock=clock), clock=clock)
    return RecoverySweep(
        store,
        synchronizer,
        processor=processor,
        config=RecoveryConfig(**config),
        audit_sink=sink,
        clock=clock,
    )


def test_stalled_processing_is_failed_then_reset(clock) -> None:
    stale = make_message(
        "a",
        group=None,
        state=S.PROCESSING,
        updated_at=BASE_TIME - timedelta(minutes=30),
    )
    store = FakeStore([stale])

    report = asyncio.run(_sweep(store, clock, stalled_after_minutes=15).run())

    assert report.stalled_ids == ("a",)
    assert report.reset_ids == ("a",)
    stored = store.messages["a"]
    assert stored.processing_state is S.PENDING
    assert stored.retry_count == 1
    assert stored.error_message is None


def test_recent_processing_claim_is_untouched(clock) -> None:
    fresh = make_message("a", group=None, state=S.PROCESSING, updated_at=BASE_TIME - timedelta(minutes=2))
    store = FakeStore([fresh])

    report = asyncio.run(_sweep(store, clock).run())

    assert report.stalled_ids == ()
    assert store.messages["a"].processing_state is S.PROCESSING


def test_errors_under_limit_are_reset_and_audited(clock) -> None:
    store = FakeStore(
        [
            make_message("a", group=None, state=S.ERROR, error_message="timeout", retry_count=2),
            make_message("b", group=None, state=S.ERROR, error_message="timeout", retry_count=5),
        ]
    )
    sink = FakeAuditSink()

    report = asyncio.run(_sweep(store, clock, sink, max_retry_count=5).run())

    assert report.reset_ids == ("a",)
    assert report.exhausted_ids == ("b",)
    assert store.messages["a"].processing_state is S.PENDING
    assert store.messages["a"].retry_count == 2
    assert store.messages["b"].processing_state is S.ERROR
    assert sink.types() == [audit.STATE_RESET]


def test_unconverged_groups_are_resynced(clock) -> None:
    store = FakeStore(
        [
            make_message("a", state=S.COMPLETED, content=sample_content(), original=True),
            make_message("b", minutes=1),
            make_message("x", group="g2", state=S.COMPLETED, content=sample_content()),
        ]
    )

    report = asyncio.run(_sweep(store, clock).run())

    assert [result.group_id for result in report.group_syncs] == ["g1"]
    assert report.group_syncs[0].updated_count == 1
    assert store.messages["b"].processing_state is S.COMPLETED


def test_stalled_error_message_is_recorded_before_reset(clock) -> None:
    stale = make_message("a", group=None, state=S.PROCESSING, updated_at=BASE_TIME - timedelta(hours=1))
    store = FakeStore([stale])

    asyncio.run(_sweep(store, clock, max_retry_count=0).run())

    assert store.messages["a"].processing_state is S.ERROR
    assert store.messages["a"].error_message == STALLED_ERROR


def test_processing_stats_counts_states_and_markers() -> None:
    store = FakeStore(
        [
            make_message("a", state=S.COMPLETED, content=sample_content(), caption="Blue Widget #AB022524 x5"),
            make_message("b"),
            make_message("c", group=None, state=S.ERROR, error_message="x", caption="Lamp"),
        ]
    )

    stats = asyncio.run(processing_stats(store))

    assert stats["total_messages"] == 3
    assert stats["by_state"]["completed"] == 1
    assert stats["by_state"]["pending"] == 1
    assert stats["by_state"]["error"] == 1
    assert stats["by_state"]["no_caption"] == 0
    assert stats["with_caption"] == 2
    assert stats["with_analyzed_content"] == 1
    assert stats["with_media_group_id"] == 2


CAPTION = "Blue Widget #AB022524 x5 (fragile)"


def _group_with_stale_content() -> FakeStore:
    stale = sample_content("Old Thing #CD010124 x1")
    return FakeStore(
        [
            make_message(
                "a",
                state=S.ERROR,
                caption=CAPTION,
                content=stale,
                original=True,
                error_message="timeout",
                retry_count=1,
            ),
            make_message("b", state=S.COMPLETED, content=stale, minutes=1),
        ]
    )


def test_reset_captioned_message_is_reparsed_before_group_sync(clock) -> None:
    store = _group_with_stale_content()

    report = asyncio.run(_sweep(store, clock, reprocess=True).run())

    assert report.reset_ids == ("a",)
    assert [outcome.message_id for outcome in report.reprocessed] == ["a"]
    assert store.messages["a"].processing_state is S.COMPLETED
    assert store.messages["a"].analyzed_content.product_code == "AB022524"
    assert store.messages["b"].analyzed_content.product_code == "AB022524"
    assert report.group_syncs == ()


def test_group_waits_for_its_captioned_member(clock) -> None:
    store = _group_with_stale_content()

    report = asyncio.run(_sweep(store, clock).run())

    assert report.group_syncs == ()
    assert store.messages["a"].processing_state is S.PENDING
    assert store.messages["a"].analyzed_content.product_code == "CD010124"


def test_captioned_pending_messages_are_processed(clock) -> None:
    store = FakeStore(
        [
            make_message("a", group=None, state=S.INITIALIZED, caption=CAPTION),
            make_message("b", group=None, state=S.PENDING, caption="Lamp #AB010124 x1"),
            make_message("c", group=None, state=S.PENDING),
        ]
    )

    report = asyncio.run(_sweep(store, clock, reprocess=True).run())

    assert sorted(outcome.message_id for outcome in report.reprocessed) == ["a", "b"]
    assert store.messages["a"].processing_state is S.COMPLETED
    assert store.messages["b"].analyzed_content.quantity == 1
    assert store.messages["c"].processing_state is S.PENDING


def test_reprocess_failure_is_reported(clock) -> None:
    store = FakeStore([make_message("a", group=None, state=S.PENDING, caption=CAPTION)])
    store.fail_next("a", times=10)
    synchronizer = MediaGroupSynchronizer(store, clock=clock)
    retry = RetryExecutor(RetryConfig(max_retries=0), clock=clock)
    processor = CaptionProcessor(store, synchronizer, retry=retry, clock=clock)
    sweep = RecoverySweep(store, synchronizer, processor=processor, clock=clock)

    report = asyncio.run(sweep.run())

    assert report.failed_ids == ("a",)
    assert report.reprocessed == ()
