"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any Matrix- or storage-specific types.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from core.content import MessageContent, parse_content

# Every record produced by this pipeline carries the same tag, including
# reactions and redaction markers.
ROOM_MESSAGE = "m.room.message"


def timestamp_from_ms(value: int) -> datetime:
    """Convert a Matrix ``origin_server_ts`` (ms since epoch) to UTC."""

    seconds, millis = divmod(int(value), 1000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)


def timestamp_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.replace(microsecond=0).timestamp()) * 1000 + value.microsecond // 1000


@dataclass(frozen=True)
class Message:
    """One archived room event."""

    room_id: str
    event_id: str
    sender: str
    timestamp: datetime
    content: dict[str, Any]
    message_type: str = ROOM_MESSAGE

    @property
    def msgtype(self) -> Optional[str]:
        value = self.content.get("msgtype")
        return value if isinstance(value, str) else None

    def parsed_content(self) -> MessageContent:
        return parse_content(self.content)


@dataclass(frozen=True)
class MessageFilter:
    """Query filter for stored messages; unset fields do not constrain."""

    room_id: Optional[str] = None
    event_id: Optional[str] = None
    sender: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def to_sql(self) -> tuple[str, list[Any]]:
        """Return a WHERE fragment (without the keyword) and its arguments."""

        conditions: list[str] = []
        args: list[Any] = []
        if self.room_id:
            conditions.append("room_id = ?")
            args.append(self.room_id)
        if self.event_id:
            conditions.append("event_id = ?")
            args.append(self.event_id)
        if self.sender:
            conditions.append("sender = ?")
            args.append(self.sender)
        if self.start_time is not None:
            conditions.append("timestamp_ms >= ?")
            args.append(timestamp_to_ms(self.start_time))
        if self.end_time is not None:
            conditions.append("timestamp_ms <= ?")
            args.append(timestamp_to_ms(self.end_time))
        return " AND ".join(conditions), args


@dataclass(frozen=True)
class EventPage:
    """One page of raw events returned by the protocol client."""

    events: list[dict[str, Any]]
    next_token: Optional[str]


@dataclass
class ImportCursor:
    """Backward pagination position for one room walk."""

    room_id: str
    token: Optional[str] = None
    imported: int = 0


class InsertStatus(str, Enum):
    OK = "ok"
    DUPLICATE = "duplicate"
    ERROR = "error"


class SkipReason(str, Enum):
    UNSUPPORTED = "unsupported_event_type"
    REDACTED = "redacted"
    MALFORMED = "malformed_content"
    INVALID = "validation_failed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Normalized:
    """Normalizer output for an accepted event."""

    message: Message


@dataclass(frozen=True)
class Inserted:
    event_id: str


@dataclass(frozen=True)
class Skipped:
    event_id: Optional[str]
    reason: SkipReason
    detail: str = ""


@dataclass(frozen=True)
class Failed:
    event_id: Optional[str]
    error: str


RecordResult = Union[Inserted, Skipped, Failed]
NormalizeResult = Union[Normalized, Skipped]


class WalkState(str, Enum):
    FETCHING = "fetching"
    NORMALIZING_BATCH = "normalizing_batch"
    PERSISTING_BATCH = "persisting_batch"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RoomReport:
    """Outcome of one room walk, built from per-record results."""

    room_id: str
    imported: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: Counter = field(default_factory=Counter)
    pages: int = 0
    events_read: int = 0
    state: WalkState = WalkState.FETCHING
    error: Optional[str] = None
    results: list[RecordResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def record(self, result: RecordResult) -> None:
        self.results.append(result)
        if isinstance(result, Inserted):
            self.imported += 1
        elif isinstance(result, Failed):
            self.failed += 1
        elif result.reason is SkipReason.DUPLICATE:
            self.duplicates += 1
        else:
            self.skipped[result.reason] += 1


@dataclass
class ImportReport:
    """Aggregate of every room processed in one invocation."""

    rooms: list[RoomReport] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return sum(room.imported for room in self.rooms)

    @property
    def failed_rooms(self) -> list[RoomReport]:
        return [room for room in self.rooms if not room.ok]

    @property
    def all_failed(self) -> bool:
        return bool(self.rooms) and len(self.failed_rooms) == len(self.rooms)
