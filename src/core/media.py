"""Selecting downloadable media from archived messages.

Pure functions only: which stored messages reference ``mxc://`` media, which
URL to fetch (full size or thumbnail), and the file stem each download is
saved under. The adapter in ``adapters/media_download.py`` does the I/O.
"""

from __future__ import annotations

import mimetypes
import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from core.content import MSGTYPE_AUDIO, MSGTYPE_FILE, MSGTYPE_IMAGE, MSGTYPE_VIDEO
from core.models import Message

IMAGE_MSGTYPES = frozenset({MSGTYPE_IMAGE})
ALL_MEDIA_MSGTYPES = frozenset({MSGTYPE_IMAGE, MSGTYPE_VIDEO, MSGTYPE_FILE, MSGTYPE_AUDIO})

# Media ids are opaque but URL-safe; anything else could escape the output dir.
_SAFE_STEM = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class MediaReference:
    room_id: str
    event_id: str
    url: str
    stem: str
    mimetype: Optional[str] = None
    name: Optional[str] = None

    def filename(self) -> str:
        return self.stem + file_extension(self.mimetype, self.name)


@dataclass
class DownloadReport:
    referenced: int = 0
    already_present: int = 0
    downloaded: int = 0
    failed: dict[str, str] = field(default_factory=dict)


def download_stem(url: str) -> str:
    """Return the media id of an ``mxc://server/media_id`` URL, or "" if unusable."""

    parts = urlsplit(url)
    if parts.scheme != "mxc" or not parts.netloc:
        return ""
    stem = parts.path.lstrip("/")
    return stem if _SAFE_STEM.match(stem) else ""


def file_extension(mimetype: Optional[str], name: Optional[str] = None) -> str:
    if mimetype:
        extension = mimetypes.guess_extension(mimetype.split(";")[0].strip())
        if extension:
            return extension
    if name:
        extension = os.path.splitext(name)[1]
        if extension and _SAFE_STEM.match(extension[1:]):
            return extension
    return ""


def media_reference(
    message: Message,
    prefer_thumbnails: bool = False,
    msgtypes: Iterable[str] = IMAGE_MSGTYPES,
) -> Optional[MediaReference]:
    """Pick the URL to download for ``message``.

    With ``prefer_thumbnails`` the ``info.thumbnail_url`` wins when present and
    the full-size ``url`` is the fallback. Encrypted attachments carry ``file``
    instead of ``url`` and are not referenced.
    """

    content = message.content
    if content.get("msgtype") not in set(msgtypes):
        return None
    info = content.get("info") if isinstance(content.get("info"), Mapping) else {}

    url, mimetype = None, None
    if prefer_thumbnails:
        url = _string(info.get("thumbnail_url"))
        thumbnail_info = info.get("thumbnail_info")
        if url and isinstance(thumbnail_info, Mapping):
            mimetype = _string(thumbnail_info.get("mimetype"))
    if not url:
        url = _string(content.get("url"))
        mimetype = _string(info.get("mimetype"))
    if not url:
        return None

    stem = download_stem(url)
    if not stem:
        return None
    name = _string(content.get("filename")) or _string(content.get("body"))
    return MediaReference(message.room_id, message.event_id, url, stem, mimetype, name)


def pending_downloads(
    references: Iterable[MediaReference],
    existing_stems: Iterable[str],
) -> list[MediaReference]:
    """Drop references whose stem is already on disk or repeated."""

    seen = set(existing_stems)
    pending: list[MediaReference] = []
    for reference in references:
        if reference.stem in seen:
            continue
        seen.add(reference.stem)
        pending.append(reference)
    return pending


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
