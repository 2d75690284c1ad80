"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the protocol client, the decrypt
capability and the message store so that the core can be reused with
different backends.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from core.models import EventPage, InsertStatus, Message, MessageFilter, RecordResult


class EventSourcePort(Protocol):
    """Paginated room history access (backward by default)."""

    async def fetch_events(
        self,
        room_id: str,
        from_token: Optional[str],
        limit: int,
        direction: str = "b",
    ) -> EventPage:
        ...


class DecryptorPort(Protocol):
    """Opaque decrypt attempt for one ``m.room.encrypted`` event."""

    async def decrypt(self, event: dict[str, Any]) -> dict[str, Any]:
        ...


class MessageStorePort(Protocol):
    """Storage operations required by the sync controller and correlator."""

    def insert_one(self, message: Message) -> InsertStatus:
        ...

    def insert_batch(self, messages: Sequence[Message]) -> list[RecordResult]:
        ...

    def query(
        self,
        message_filter: Optional[MessageFilter] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[Message]:
        ...

    def count(self, message_filter: Optional[MessageFilter] = None) -> int:
        ...
