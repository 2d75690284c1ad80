"""Typed view over the open ``content`` map of a stored message.

Matrix message content is a loose JSON object keyed by ``msgtype``. The store
keeps that object verbatim, while the rest of the core works with the small
tagged union below. Anything we do not recognize becomes ``UnknownContent``
with the original map attached, so new event kinds survive a round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Optional, Union

MSGTYPE_TEXT = "m.text"
MSGTYPE_NOTICE = "m.notice"
MSGTYPE_IMAGE = "m.image"
MSGTYPE_VIDEO = "m.video"
MSGTYPE_FILE = "m.file"
MSGTYPE_AUDIO = "m.audio"
MSGTYPE_REACTION = "m.reaction"
MSGTYPE_REDACTION = "m.redaction"

# Relation keys are copied through untouched so edits and replies keep
# pointing at the event they modify.
RELATION_KEYS = ("m.relates_to", "m.new_content")


def _relations(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {key: raw[key] for key in RELATION_KEYS if key in raw}


@dataclass(frozen=True)
class TextContent:
    """Plain or formatted text (``m.text``)."""

    msgtype: ClassVar[str] = MSGTYPE_TEXT

    body: str
    formatted_body: Optional[str] = None
    format: Optional[str] = None
    relations: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TextContent":
        return cls(
            body=raw["body"],
            formatted_body=raw.get("formatted_body"),
            format=raw.get("format"),
            relations=_relations(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"msgtype": self.msgtype, "body": self.body}
        if self.formatted_body:
            data["formatted_body"] = self.formatted_body
            if self.format:
                data["format"] = self.format
        data.update(self.relations)
        return data


@dataclass(frozen=True)
class NoticeContent(TextContent):
    """Bot-style notice (``m.notice``); rendered like text."""

    msgtype: ClassVar[str] = MSGTYPE_NOTICE


@dataclass(frozen=True)
class MediaContent:
    """Shared shape of image, video, file and audio messages."""

    msgtype: ClassVar[str] = ""

    body: str
    url: Optional[str] = None
    info: Optional[dict[str, Any]] = None
    file: Optional[dict[str, Any]] = None
    filename: Optional[str] = None
    relations: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MediaContent":
        return cls(
            body=raw["body"],
            url=raw.get("url"),
            info=raw.get("info"),
            file=raw.get("file"),
            filename=raw.get("filename"),
            relations=_relations(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"msgtype": self.msgtype, "body": self.body}
        # Encrypted media carries ``file`` instead of ``url``.
        for key in ("url", "info", "file", "filename"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(self.relations)
        return data


@dataclass(frozen=True)
class ImageContent(MediaContent):
    msgtype: ClassVar[str] = MSGTYPE_IMAGE


@dataclass(frozen=True)
class VideoContent(MediaContent):
    msgtype: ClassVar[str] = MSGTYPE_VIDEO


@dataclass(frozen=True)
class FileContent(MediaContent):
    msgtype: ClassVar[str] = MSGTYPE_FILE


@dataclass(frozen=True)
class AudioContent(MediaContent):
    msgtype: ClassVar[str] = MSGTYPE_AUDIO


@dataclass(frozen=True)
class ReactionContent:
    """An annotation relation pointing at another event."""

    msgtype: ClassVar[str] = MSGTYPE_REACTION

    target_event_id: str
    key: str
    rel_type: str = "m.annotation"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ReactionContent":
        relation = raw["relation"]
        return cls(
            target_event_id=relation["event_id"],
            key=relation["key"],
            rel_type=relation.get("rel_type", "m.annotation"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "msgtype": self.msgtype,
            "body": self.key,
            "relation": {
                "rel_type": self.rel_type,
                "event_id": self.target_event_id,
                "key": self.key,
            },
        }


@dataclass(frozen=True)
class RedactionContent:
    """Marker recording that another event was redacted."""

    msgtype: ClassVar[str] = MSGTYPE_REDACTION

    redacts: str
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RedactionContent":
        return cls(redacts=raw["redacts"], reason=raw.get("reason"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"msgtype": self.msgtype, "redacts": self.redacts}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class UnknownContent:
    """Passthrough for anything we cannot type; keeps every original field."""

    raw: dict[str, Any]

    @property
    def msgtype(self) -> Optional[str]:
        value = self.raw.get("msgtype")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)


MessageContent = Union[
    TextContent,
    NoticeContent,
    ImageContent,
    VideoContent,
    FileContent,
    AudioContent,
    ReactionContent,
    RedactionContent,
    UnknownContent,
]

_VARIANTS = {
    variant.msgtype: variant
    for variant in (
        TextContent,
        NoticeContent,
        ImageContent,
        VideoContent,
        FileContent,
        AudioContent,
        ReactionContent,
        RedactionContent,
    )
}


def is_known_msgtype(msgtype: Any) -> bool:
    return isinstance(msgtype, str) and msgtype in _VARIANTS


def parse_content(raw: Mapping[str, Any]) -> MessageContent:
    """Return the typed variant for a content map.

    Raises ``KeyError``/``TypeError`` when a known ``msgtype`` is missing a
    required field; unknown kinds never raise.
    """

    variant = _VARIANTS.get(raw.get("msgtype"))  # type: ignore[arg-type]
    if variant is None:
        return UnknownContent(raw=dict(raw))
    parsed = variant.from_dict(raw)
    if isinstance(parsed, (TextContent, MediaContent)) and not isinstance(parsed.body, str):
        raise TypeError(f"{variant.msgtype} body must be a string")
    return parsed


def content_texts(raw: Mapping[str, Any]) -> list[str]:
    """Return the plain and formatted bodies of a content map, in that order."""

    texts: list[str] = []
    for key in ("body", "formatted_body"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            texts.append(value)
    return texts
