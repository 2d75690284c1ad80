from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import pytest

from adapters.sqlite_storage import SQLiteMessageStore
from core.config import SyncConfig
from core.errors import DecryptionError, SyncError, TransportError
from core.models import (
    EventPage,
    Failed,
    Inserted,
    Message,
    MessageFilter,
    RecordResult,
    SkipReason,
    Skipped,
    WalkState,
)
from core.normalizer import ENCRYPTED_PLACEHOLDER, EventNormalizer
from core.sync import RateLimiter, RoomSynchronizer

ROOM = "!room:example.org"
OTHER_ROOM = "!other:example.org"


def _event(number: int, **overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "m.room.message",
        "event_id": f"$e{number}",
        "sender": "@alice:example.org",
        "origin_server_ts": 1_700_000_000_000 + number * 1000,
        "content": {"msgtype": "m.text", "body": f"message {number}"},
    }
    event.update(overrides)
    return event


def _history(count: int) -> list[dict[str, Any]]:
    # Backward pagination returns newest first.
    return [_event(number) for number in range(count, 0, -1)]


class FakeSource:
    """Serves a fixed event list in pages; tokens are list offsets."""

    def __init__(self, rooms: dict[str, list[dict[str, Any]]], fail_at: Optional[dict[str, str]] = None) -> None:
        self.rooms = rooms
        self.fail_at = fail_at or {}
        self.calls: list[tuple[str, Optional[str], int]] = []

    async def fetch_events(
        self, room_id: str, from_token: Optional[str], limit: int, direction: str = "b"
    ) -> EventPage:
        self.calls.append((room_id, from_token, limit))
        if self.fail_at.get(room_id) == (from_token or "0"):
            raise TransportError(f"boom in {room_id}")
        events = self.rooms[room_id]
        start = int(from_token or 0)
        end = start + limit
        next_token = str(end) if end < len(events) else None
        return EventPage(events=events[start:end], next_token=next_token)


class FakeStore:
    def __init__(self, fail_event_ids: Sequence[str] = ()) -> None:
        self.rows: dict[tuple[str, str], Message] = {}
        self.batches: list[int] = []
        self.fail_event_ids = set(fail_event_ids)

    def insert_one(self, message: Message):
        raise AssertionError("sync must insert in batches")

    def insert_batch(self, messages: Sequence[Message]) -> list[RecordResult]:
        self.batches.append(len(messages))
        results: list[RecordResult] = []
        for message in messages:
            key = (message.room_id, message.event_id)
            if message.event_id in self.fail_event_ids:
                results.append(Failed(message.event_id, "disk on fire"))
            elif key in self.rows:
                results.append(Skipped(message.event_id, SkipReason.DUPLICATE))
            else:
                self.rows[key] = message
                results.append(Inserted(message.event_id))
        return results

    def query(self, message_filter: Optional[MessageFilter] = None, limit: int = 0, offset: int = 0):
        return list(self.rows.values())

    def count(self, message_filter: Optional[MessageFilter] = None) -> int:
        return len(self.rows)

    def event_ids(self, room_id: str = ROOM) -> set[str]:
        return {event_id for (room, event_id) in self.rows if room == room_id}


class SlowDecryptor:
    async def decrypt(self, event: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(1.0)
        raise DecryptionError("unreachable")


def _synchronizer(
    source: FakeSource,
    store: FakeStore,
    normalizer: Optional[EventNormalizer] = None,
    **config: Any,
) -> RoomSynchronizer:
    settings = {"page_size": 2, "batch_size": 100, "requests_per_second": 0}
    settings.update(config)
    return RoomSynchronizer(
        source=source,
        store=store,
        normalizer=normalizer or EventNormalizer(),
        config=SyncConfig(**settings),
    )


def test_imports_whole_history_until_token_runs_out() -> None:
    source = FakeSource({ROOM: _history(5)})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store).synchronize(ROOM))

    assert report.ok
    assert report.state is WalkState.DONE
    assert report.imported == 5
    assert report.pages == 3
    assert report.events_read == 5
    assert [call[1] for call in source.calls] == [None, "2", "4"]
    assert store.event_ids() == {f"$e{number}" for number in range(1, 6)}


def test_second_run_imports_nothing_new() -> None:
    source = FakeSource({ROOM: _history(5)})
    store = FakeStore()
    synchronizer = _synchronizer(source, store)

    asyncio.run(synchronizer.synchronize(ROOM))
    report = asyncio.run(synchronizer.synchronize(ROOM))

    assert report.ok
    assert report.imported == 0
    assert report.duplicates == 5
    assert report.failed == 0
    assert len(store.rows) == 5


def test_limit_then_resume_without_gap_or_duplicate() -> None:
    source = FakeSource({ROOM: _history(5)})
    store = FakeStore()
    synchronizer = _synchronizer(source, store)

    first = asyncio.run(synchronizer.synchronize(ROOM, limit=3))
    assert first.imported == 3
    assert store.event_ids() == {"$e5", "$e4", "$e3"}

    second = asyncio.run(synchronizer.synchronize(ROOM, limit=5))
    assert second.imported == 2
    assert second.duplicates == 3
    assert store.event_ids() == {f"$e{number}" for number in range(1, 6)}


def test_batches_are_clipped_to_the_remaining_limit() -> None:
    source = FakeSource({ROOM: _history(5)})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store, page_size=10, batch_size=2).synchronize(ROOM, limit=3))

    assert report.imported == 3
    assert store.batches == [2, 1]


def test_redacted_events_are_never_stored() -> None:
    history = _history(3)
    history[1] = _event(2, content={}, unsigned={"redacted_because": {"event_id": "$r"}})
    source = FakeSource({ROOM: history})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store).synchronize(ROOM))

    assert report.imported == 2
    assert report.skipped[SkipReason.REDACTED] == 1
    assert "$e2" not in store.event_ids()


def test_empty_page_ends_the_walk() -> None:
    source = FakeSource({ROOM: []})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store).synchronize(ROOM))

    assert report.ok
    assert report.state is WalkState.DONE
    assert report.pages == 1
    assert report.imported == 0


def test_fetch_failure_aborts_room_after_keeping_earlier_pages() -> None:
    source = FakeSource({ROOM: _history(5)}, fail_at={ROOM: "2"})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store).synchronize(ROOM))

    assert not report.ok
    assert report.state is WalkState.FAILED
    assert report.error == f"boom in {ROOM}"
    assert report.imported == 2
    assert store.event_ids() == {"$e5", "$e4"}


def test_decrypt_timeout_persists_records_already_normalized() -> None:
    history = [_event(3), _event(2, type="m.room.encrypted", content={"algorithm": "x"}), _event(1)]
    source = FakeSource({ROOM: history})
    store = FakeStore()
    normalizer = EventNormalizer(SlowDecryptor(), decrypt_timeout=0.01)

    report = asyncio.run(_synchronizer(source, store, normalizer, page_size=10).synchronize(ROOM))

    assert report.state is WalkState.FAILED
    assert store.event_ids() == {"$e3"}


def test_store_failure_affects_only_that_record() -> None:
    source = FakeSource({ROOM: _history(3)})
    store = FakeStore(fail_event_ids=["$e2"])

    report = asyncio.run(_synchronizer(source, store).synchronize(ROOM))

    assert report.ok
    assert report.imported == 2
    assert report.failed == 1
    assert store.event_ids() == {"$e3", "$e1"}


def test_failed_room_does_not_stop_the_next_one() -> None:
    source = FakeSource({ROOM: _history(2), OTHER_ROOM: _history(3)}, fail_at={ROOM: "0"})
    store = FakeStore()

    report = asyncio.run(_synchronizer(source, store).synchronize_rooms([ROOM, OTHER_ROOM]))

    assert [room.room_id for room in report.failed_rooms] == [ROOM]
    assert report.imported == 3
    assert store.event_ids(OTHER_ROOM) == {"$e1", "$e2", "$e3"}


def test_all_rooms_failing_raises_with_report() -> None:
    source = FakeSource({ROOM: _history(2), OTHER_ROOM: _history(2)}, fail_at={ROOM: "0", OTHER_ROOM: "0"})
    store = FakeStore()

    with pytest.raises(SyncError) as excinfo:
        asyncio.run(_synchronizer(source, store).synchronize_rooms([ROOM, OTHER_ROOM]))

    assert excinfo.value.report is not None
    assert len(excinfo.value.report.failed_rooms) == 2


def test_rate_limiter_spaces_calls() -> None:
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    limiter = RateLimiter(10, clock=lambda: 0.0, sleep=fake_sleep)

    async def _three_calls() -> None:
        for _ in range(3):
            await limiter.wait()

    asyncio.run(_three_calls())

    assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]


def test_rate_limiter_zero_disables_pacing() -> None:
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    limiter = RateLimiter(0, clock=lambda: 0.0, sleep=fake_sleep)
    asyncio.run(limiter.wait())
    asyncio.run(limiter.wait())

    assert sleeps == []


class BrokenDecryptor:
    async def decrypt(self, event: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError("olm session corrupted")


def _encrypted_event(number: int) -> dict[str, Any]:
    return _event(
        number,
        type="m.room.encrypted",
        content={"algorithm": "m.megolm.v1.aes-sha2", "ciphertext": "AwgAEn", "session_id": "sess"},
    )


def test_unexpected_decryptor_error_fails_only_that_room() -> None:
    source = FakeSource({ROOM: [_event(2), _encrypted_event(1)], OTHER_ROOM: _history(3)})
    store = FakeStore()
    normalizer = EventNormalizer(BrokenDecryptor())

    report = asyncio.run(_synchronizer(source, store, normalizer).synchronize_rooms([ROOM, OTHER_ROOM]))

    broken, healthy = report.rooms
    assert broken.state is WalkState.FAILED
    assert "olm session corrupted" in broken.error
    # The plain event normalized before the failure is still persisted.
    assert store.event_ids(ROOM) == {"$e2"}
    assert healthy.ok
    assert healthy.imported == 3


@pytest.mark.parametrize("page_size", [1, 2, 7])
def test_sqlite_import_is_idempotent_for_any_page_size(tmp_path, page_size: int) -> None:
    store = SQLiteMessageStore(str(tmp_path / "archive.db"))
    store.init_db()
    history = _history(9)
    history.insert(4, _encrypted_event(100))
    source = FakeSource({ROOM: history})
    synchronizer = _synchronizer(source, store, page_size=page_size, batch_size=3)

    first = asyncio.run(synchronizer.synchronize(ROOM))
    stored = store.count()
    second = asyncio.run(synchronizer.synchronize(ROOM))

    assert first.imported == 10
    assert second.imported == 0
    assert second.duplicates == 10
    assert store.count() == stored == 10
    event_ids = [message.event_id for message in store.query()]
    assert len(set(event_ids)) == len(event_ids)

    placeholder = store.get_message(ROOM, "$e100")
    assert placeholder is not None
    assert placeholder.content["msgtype"] == "m.text"
    assert placeholder.content["body"] == ENCRYPTED_PLACEHOLDER
    assert placeholder.content["session_id"] == "sess"
