"""Matrix history adapter.

Implements the core EventSourcePort on top of a mautrix ``Client``. Pages are
requested through the raw ``/messages`` endpoint so events reach the
normalizer as plain JSON maps, including kinds mautrix cannot deserialize.
"""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp
from mautrix.api import Method, Path
from mautrix.client import Client
from mautrix.errors import MatrixError, MNotFound
from mautrix.types import EventType, RoomID

from core.errors import TransportError
from core.models import EventPage

LOGGER = logging.getLogger(__name__)


class MatrixEventSource:
    """EventSourcePort adapter over an injected, already-authenticated client."""

    def __init__(self, client: Client) -> None:
        self._client = client

    async def fetch_events(
        self,
        room_id: str,
        from_token: Optional[str],
        limit: int,
        direction: str = "b",
    ) -> EventPage:
        """Fetch one page of room history, newest first when walking backward."""

        query_params = {"dir": direction, "limit": str(limit)}
        if from_token:
            query_params["from"] = from_token
        try:
            response = await self._client.api.request(
                Method.GET,
                Path.v3.rooms[room_id].messages,
                query_params=query_params,
            )
        except (MatrixError, aiohttp.ClientError) as exc:
            raise TransportError(f"Failed to fetch messages for {room_id}: {exc}") from exc

        chunk = response.get("chunk") or []
        next_token = response.get("end")
        LOGGER.debug("Fetched %s events from %s (next token: %s)", len(chunk), room_id, next_token)
        return EventPage(events=list(chunk), next_token=next_token or None)

    async def joined_rooms(self) -> list[str]:
        try:
            rooms = await self._client.get_joined_rooms()
        except (MatrixError, aiohttp.ClientError) as exc:
            raise TransportError(f"Failed to list joined rooms: {exc}") from exc
        return [str(room_id) for room_id in rooms]

    async def room_name(self, room_id: str) -> str:
        """Room name from its ``m.room.name`` state, falling back to the id."""

        try:
            content = await self._client.get_state_event(RoomID(room_id), EventType.ROOM_NAME)
        except MNotFound:
            return room_id
        except (MatrixError, aiohttp.ClientError) as exc:
            LOGGER.debug("Could not read name of %s: %s", room_id, exc)
            return room_id
        name = getattr(content, "name", None)
        return name or room_id
