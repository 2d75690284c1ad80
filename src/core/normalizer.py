"""Raw Matrix event -> archived Message.

The normalizer never raises for bad input; it returns ``Skipped`` with a
reason instead. The one exception is a decrypt call that times out or hits a
transport failure, which is surfaced as ``TransportError`` so the controller
can abort the room.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from core.content import (
    MSGTYPE_TEXT,
    ReactionContent,
    RedactionContent,
    is_known_msgtype,
    parse_content,
)
from core.errors import DecryptionError, TransportError, ValidationError
from core.models import (
    ROOM_MESSAGE,
    Message,
    NormalizeResult,
    Normalized,
    SkipReason,
    Skipped,
    timestamp_from_ms,
)
from core.ports import DecryptorPort
from core.validation import validate_message

LOGGER = logging.getLogger(__name__)

EVENT_MESSAGE = "m.room.message"
EVENT_REACTION = "m.reaction"
EVENT_ENCRYPTED = "m.room.encrypted"
EVENT_REDACTION = "m.room.redaction"

ENCRYPTED_PLACEHOLDER = "[Encrypted message — decryption not available]"

# Session identifiers kept on placeholders so a later key import can still
# locate the ciphertext's session.
_ENCRYPTION_FIELDS = ("algorithm", "session_id", "sender_key", "device_id")


def is_redacted(event: Mapping[str, Any]) -> bool:
    unsigned = event.get("unsigned")
    return isinstance(unsigned, Mapping) and unsigned.get("redacted_because") is not None


class _Malformed(Exception):
    """Internal signal for content we cannot normalize."""


class EventNormalizer:
    """Convert one raw event into a Message or a skip decision."""

    def __init__(
        self,
        decryptor: Optional[DecryptorPort] = None,
        decrypt_timeout: float = 10.0,
    ) -> None:
        self._decryptor = decryptor
        self._decrypt_timeout = decrypt_timeout

    async def normalize(self, event: Mapping[str, Any], room_id: str) -> NormalizeResult:
        """Normalize one event for ``room_id``."""

        event_id = event.get("event_id")
        if not isinstance(event_id, str):
            event_id = None

        event_type = event.get("type")
        content = event.get("content")
        if not isinstance(event_type, str) or not isinstance(content, Mapping):
            return Skipped(event_id, SkipReason.MALFORMED, "missing type or content")

        # Redaction check comes first: a redacted event's content is empty and
        # would otherwise look malformed.
        if is_redacted(event):
            return Skipped(event_id, SkipReason.REDACTED)

        if "state_key" in event:
            return Skipped(event_id, SkipReason.UNSUPPORTED, event_type)

        sender = event.get("sender")
        origin_ts = event.get("origin_server_ts")
        if event_id is None or not isinstance(sender, str) or not isinstance(origin_ts, int):
            return Skipped(event_id, SkipReason.MALFORMED, "missing envelope fields")

        try:
            normalized_content = await self._normalize_content(event, event_type, content, room_id)
        except _Malformed as exc:
            LOGGER.debug("Malformed %s event %s: %s", event_type, event_id, exc)
            return Skipped(event_id, SkipReason.MALFORMED, str(exc))

        message = Message(
            room_id=room_id,
            event_id=event_id,
            sender=sender,
            timestamp=timestamp_from_ms(origin_ts),
            content=normalized_content,
            message_type=ROOM_MESSAGE,
        )
        try:
            validate_message(message)
        except ValidationError as exc:
            LOGGER.warning("Invalid message %s: %s", event_id, exc)
            return Skipped(event_id, SkipReason.INVALID, str(exc))
        return Normalized(message)

    async def _normalize_content(
        self,
        event: Mapping[str, Any],
        event_type: str,
        content: Mapping[str, Any],
        room_id: str,
    ) -> dict[str, Any]:
        if event_type == EVENT_MESSAGE:
            return _message_content(content)
        if event_type == EVENT_REACTION:
            return _reaction_content(content)
        if event_type == EVENT_REDACTION:
            return _redaction_content(event, content)
        if event_type == EVENT_ENCRYPTED:
            return await self._encrypted_content(event, content, room_id)
        # Unknown event kinds are archived as-is so future readers can decide.
        return dict(content)

    async def _encrypted_content(
        self,
        event: Mapping[str, Any],
        content: Mapping[str, Any],
        room_id: str,
    ) -> dict[str, Any]:
        if self._decryptor is None:
            return _encrypted_placeholder(content)

        try:
            decrypted = await asyncio.wait_for(
                self._decryptor.decrypt({**event, "room_id": room_id}),
                timeout=self._decrypt_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Decrypt timed out for {event.get('event_id')}") from exc
        except DecryptionError as exc:
            LOGGER.info("Could not decrypt %s: %s", event.get("event_id"), exc.message)
            return _encrypted_placeholder(content)

        inner_type = decrypted.get("type")
        inner_content = decrypted.get("content")
        if inner_type == EVENT_ENCRYPTED or not isinstance(inner_content, Mapping):
            LOGGER.info("Decrypted payload for %s is unusable", event.get("event_id"))
            return _encrypted_placeholder(content)
        return await self._normalize_content(event, inner_type, inner_content, room_id)


def _message_content(content: Mapping[str, Any]) -> dict[str, Any]:
    msgtype = content.get("msgtype")
    if not isinstance(msgtype, str):
        raise _Malformed("message without msgtype")
    if not is_known_msgtype(msgtype):
        return dict(content)
    try:
        parsed = parse_content(content).to_dict()
    except (KeyError, TypeError) as exc:
        raise _Malformed(f"{msgtype} content is incomplete: {exc}") from exc
    # Fields the typed view does not model (m.mentions, external_url) are kept.
    return {**content, **parsed}


def _reaction_content(content: Mapping[str, Any]) -> dict[str, Any]:
    relation = content.get("m.relates_to")
    if not isinstance(relation, Mapping):
        raise _Malformed("reaction without m.relates_to")
    target = relation.get("event_id")
    key = relation.get("key")
    if not isinstance(target, str) or not isinstance(key, str):
        raise _Malformed("reaction relation lacks event_id or key")
    return ReactionContent(
        target_event_id=target,
        key=key,
        rel_type=relation.get("rel_type") or "m.annotation",
    ).to_dict()


def _redaction_content(event: Mapping[str, Any], content: Mapping[str, Any]) -> dict[str, Any]:
    # Room v11 moved ``redacts`` into content; older rooms keep it top-level.
    redacts = content.get("redacts") or event.get("redacts")
    if not isinstance(redacts, str):
        raise _Malformed("redaction without target")
    reason = content.get("reason")
    return RedactionContent(redacts=redacts, reason=reason if isinstance(reason, str) else None).to_dict()


def _encrypted_placeholder(content: Mapping[str, Any]) -> dict[str, Any]:
    placeholder: dict[str, Any] = {"msgtype": MSGTYPE_TEXT, "body": ENCRYPTED_PLACEHOLDER}
    for key in _ENCRYPTION_FIELDS:
        if key in content:
            placeholder[key] = content[key]
    return placeholder
