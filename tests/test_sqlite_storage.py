from __future__ import annotations

import asyncio

import pytest

from adapters.sqlite_storage import SQLiteStorage
from conftest import BASE_TIME, make_message, sample_content
from core.errors import ValidationError
from core.media_group_sync import MediaGroupSynchronizer
from core.models import ProcessingState, SyncMetadata

S = ProcessingState


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "captionsync.db"))
    storage.init_db()
    return storage


def test_get_returns_stored_message(storage: SQLiteStorage) -> None:
    message = make_message(
        "a",
        caption="Blue Widget #AB022524 x5",
        original=True,
        edit_history=({"caption": "Blue Widget #AB022524 x4"},),
        is_edited=True,
    )
    storage.add(message)

    loaded = asyncio.run(storage.get("a"))

    assert loaded == message
    assert asyncio.run(storage.get("missing")) is None


def test_analyzed_content_survives_storage(storage: SQLiteStorage) -> None:
    content = sample_content().with_sync(
        SyncMetadata(group_message_count=3, source_message_id="a", sync_timestamp=BASE_TIME, is_original_caption=False)
    )
    storage.add(make_message("b", state=S.COMPLETED, content=content))

    loaded = asyncio.run(storage.get("b"))

    assert loaded.analyzed_content == content


def test_update_writes_only_given_fields(storage: SQLiteStorage) -> None:
    storage.add(make_message("a", caption="Lamp"))

    asyncio.run(
        storage.update(
            "a",
            {"processing_state": S.ERROR, "error_message": "boom", "retry_count": 1, "updated_at": BASE_TIME},
        )
    )

    loaded = asyncio.run(storage.get("a"))
    assert loaded.processing_state is S.ERROR
    assert loaded.error_message == "boom"
    assert loaded.retry_count == 1
    assert loaded.updated_at == BASE_TIME
    assert loaded.caption == "Lamp"


def test_update_rejects_unknown_fields_and_ids(storage: SQLiteStorage) -> None:
    storage.add(make_message("a"))

    with pytest.raises(ValidationError):
        asyncio.run(storage.update("a", {"chat_id": 5}))
    with pytest.raises(ValidationError):
        asyncio.run(storage.update("nope", {"retry_count": 1}))


def test_group_and_state_queries(storage: SQLiteStorage) -> None:
    storage.add(make_message("c", minutes=2))
    storage.add(make_message("a", state=S.COMPLETED, content=sample_content(), minutes=0))
    storage.add(make_message("b", minutes=1))
    storage.add(make_message("z", group="other"))

    group = asyncio.run(storage.list_by_group("g1"))
    pending = asyncio.run(storage.list_by_state(S.PENDING))

    assert [m.id for m in group] == ["a", "b", "c"]
    assert {m.id for m in pending} == {"b", "c", "z"}
    assert len(asyncio.run(storage.list_all())) == 4


def test_audit_events_are_appended(storage: SQLiteStorage) -> None:
    asyncio.run(storage.record("media_group_synced", "a", "corr-a", {"updated_count": 2}))
    asyncio.run(storage.record("media_group_sync_failed", "g1", "corr-b", {}, error_message="no source"))

    events = storage.list_audit_events()

    assert [e["event_type"] for e in events] == ["media_group_synced", "media_group_sync_failed"]
    assert events[0]["metadata"] == {"updated_count": 2}
    assert events[1]["error_message"] == "no source"
    assert len(storage.list_audit_events("a")) == 1


def test_synchronizer_runs_against_sqlite(storage: SQLiteStorage, clock) -> None:
    storage.add(make_message("a", state=S.COMPLETED, content=sample_content(), original=True))
    storage.add(make_message("b", minutes=1))
    storage.add(make_message("c", minutes=2))

    result = asyncio.run(MediaGroupSynchronizer(storage, audit_sink=storage, clock=clock).sync("g1"))

    assert result.updated_count == 2
    siblings = asyncio.run(storage.list_by_state(S.COMPLETED))
    assert {m.id for m in siblings} == {"a", "b", "c"}
    assert storage.list_audit_events("a")[0]["event_type"] == "media_group_synced"
