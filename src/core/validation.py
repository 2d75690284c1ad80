"""Identifier invariants for archived messages.

The formats are fixed by the Matrix protocol; we only check them.
"""

from __future__ import annotations

import re

from core.errors import ValidationError
from core.models import ROOM_MESSAGE, Message

ROOM_ID_PATTERN = re.compile(r"^!.+:.+$")
EVENT_ID_PATTERN = re.compile(r"^\$.+$")
USER_ID_PATTERN = re.compile(r"^@.+:.+$")


def validate_message(message: Message) -> None:
    """Raise ``ValidationError`` for the first field that breaks its pattern."""

    if not ROOM_ID_PATTERN.match(message.room_id):
        raise ValidationError("room_id", "Invalid room ID format")
    if not EVENT_ID_PATTERN.match(message.event_id):
        raise ValidationError("event_id", "Invalid event ID format")
    if not USER_ID_PATTERN.match(message.sender):
        raise ValidationError("sender", "Invalid sender format")
    if message.message_type != ROOM_MESSAGE:
        raise ValidationError("type", "Invalid message type")
