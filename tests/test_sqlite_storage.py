from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from adapters.sqlite_storage import SQLiteMessageStore
from core.models import Failed, Inserted, InsertStatus, Message, MessageFilter, SkipReason, Skipped

ROOM = "!room:example.org"
OTHER_ROOM = "!other:example.org"


def _message(event_id: str, *, room_id: str = ROOM, sender: str = "@alice:example.org", second: int = 0, **content: Any) -> Message:
    return Message(
        room_id=room_id,
        event_id=event_id,
        sender=sender,
        timestamp=datetime(2024, 1, 1, 12, 0, second, 250000, tzinfo=timezone.utc),
        content=content or {"msgtype": "m.text", "body": event_id},
    )


@pytest.fixture()
def store(tmp_path: Path) -> SQLiteMessageStore:
    store = SQLiteMessageStore(str(tmp_path / "archive.db"))
    store.init_db()
    return store


def test_insert_one_reports_duplicates(store: SQLiteMessageStore) -> None:
    assert store.insert_one(_message("$a")) is InsertStatus.OK
    assert store.insert_one(_message("$a")) is InsertStatus.DUPLICATE
    assert store.count() == 1


def test_same_event_id_in_another_room_is_not_a_duplicate(store: SQLiteMessageStore) -> None:
    store.insert_one(_message("$a"))

    assert store.insert_one(_message("$a", room_id=OTHER_ROOM)) is InsertStatus.OK


def test_insert_batch_is_best_effort(store: SQLiteMessageStore) -> None:
    store.insert_one(_message("$old"))
    unserializable = _message("$bad", msgtype="m.text", body="x", extra={1, 2})

    results = store.insert_batch([_message("$new1"), _message("$old"), unserializable, _message("$new2")])

    assert results[0] == Inserted("$new1")
    assert results[1] == Skipped("$old", SkipReason.DUPLICATE)
    assert isinstance(results[2], Failed)
    assert results[2].event_id == "$bad"
    assert results[3] == Inserted("$new2")
    assert store.count() == 3
    assert store.get_message(ROOM, "$bad") is None


def test_round_trip_keeps_content_and_millisecond_timestamp(store: SQLiteMessageStore) -> None:
    original = _message(
        "$a",
        msgtype="org.example.custom",
        body="ünïcode",
        **{"m.relates_to": {"rel_type": "m.replace", "event_id": "$x"}},
    )
    store.insert_one(original)

    loaded = store.get_message(ROOM, "$a")

    assert loaded == original


def test_query_orders_by_time_and_filters(store: SQLiteMessageStore) -> None:
    store.insert_batch(
        [
            _message("$late", second=30),
            _message("$early", second=10, sender="@bob:example.org"),
            _message("$middle", second=20),
            _message("$elsewhere", room_id=OTHER_ROOM, second=5),
        ]
    )

    in_room = store.query(MessageFilter(room_id=ROOM))
    assert [message.event_id for message in in_room] == ["$early", "$middle", "$late"]

    by_alice = store.query(MessageFilter(room_id=ROOM, sender="@alice:example.org"))
    assert [message.event_id for message in by_alice] == ["$middle", "$late"]

    window = MessageFilter(
        room_id=ROOM,
        start_time=datetime(2024, 1, 1, 12, 0, 15, tzinfo=timezone.utc),
        end_time=datetime(2024, 1, 1, 12, 0, 25, tzinfo=timezone.utc),
    )
    assert [message.event_id for message in store.query(window)] == ["$middle"]

    paged = store.query(MessageFilter(room_id=ROOM), limit=1, offset=1)
    assert [message.event_id for message in paged] == ["$middle"]
    assert store.count(MessageFilter(room_id=ROOM)) == 3


def test_delete_and_list_rooms(store: SQLiteMessageStore) -> None:
    store.insert_batch([_message("$a"), _message("$b"), _message("$c", room_id=OTHER_ROOM)])

    assert store.delete_message(ROOM, "$a") is True
    assert store.delete_message(ROOM, "$a") is False
    assert store.list_rooms() == [(OTHER_ROOM, 1), (ROOM, 1)]


def test_insert_batch_with_nothing_to_do(store: SQLiteMessageStore) -> None:
    assert store.insert_batch([]) == []


def test_unopenable_database_fails_every_record(tmp_path: Path) -> None:
    # A directory cannot be opened as a database file.
    broken = SQLiteMessageStore(str(tmp_path))

    results = broken.insert_batch([_message("$a"), _message("$b")])

    assert [type(result) for result in results] == [Failed, Failed]
    assert [result.event_id for result in results] == ["$a", "$b"]
    assert broken.insert_one(_message("$c")) is InsertStatus.ERROR
