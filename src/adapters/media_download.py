"""Media download adapter.

Fetches ``mxc://`` media referenced by archived messages through mautrix and
writes each file into one flat output directory. Files already present (by
stem, ignoring the extension) are never fetched again, so re-running the
command only picks up new media.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import aiohttp
from mautrix.client import Client
from mautrix.errors import MatrixError
from mautrix.types import ContentURI

from core.errors import TransportError
from core.media import (
    IMAGE_MSGTYPES,
    DownloadReport,
    MediaReference,
    media_reference,
    pending_downloads,
)
from core.models import MessageFilter
from core.ports import MessageStorePort
from core.sync import RateLimiter

LOGGER = logging.getLogger(__name__)

_PARTIAL_SUFFIX = ".part"


def existing_stems(directory: str) -> set[str]:
    """File names in ``directory`` without their extension; missing dir is empty."""

    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return set()
    return {
        os.path.splitext(entry.name)[0]
        for entry in entries
        if entry.is_file() and not entry.name.endswith(_PARTIAL_SUFFIX)
    }


class MediaDownloader:
    """Downloads media for stored messages into ``output_dir``."""

    def __init__(
        self,
        client: Client,
        store: MessageStorePort,
        output_dir: str,
        prefer_thumbnails: bool = False,
        msgtypes: frozenset[str] = IMAGE_MSGTYPES,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._output_dir = output_dir
        self._prefer_thumbnails = prefer_thumbnails
        self._msgtypes = msgtypes
        self._limiter = rate_limiter or RateLimiter(0)

    async def download_all(self, message_filter: Optional[MessageFilter] = None) -> DownloadReport:
        report = DownloadReport()
        references = [
            reference
            for reference in (
                media_reference(message, self._prefer_thumbnails, self._msgtypes)
                for message in self._store.query(message_filter)
            )
            if reference is not None
        ]
        report.referenced = len(references)
        if not references:
            LOGGER.info("No media messages found")
            return report

        os.makedirs(self._output_dir, exist_ok=True)
        pending = pending_downloads(references, existing_stems(self._output_dir))
        report.already_present = len(references) - len(pending)
        if report.already_present:
            LOGGER.info("Skipping %s files already in %s", report.already_present, self._output_dir)

        for reference in pending:
            try:
                path = await self.download(reference)
            except (TransportError, OSError) as exc:
                message = exc.message if isinstance(exc, TransportError) else str(exc)
                LOGGER.warning("Failed to download %s from %s: %s", reference.url, reference.event_id, message)
                report.failed[reference.event_id] = message
                continue
            report.downloaded += 1
            LOGGER.info("Downloaded %s -> %s", reference.url, path)
        return report

    async def download(self, reference: MediaReference) -> str:
        """Fetch one file and write it atomically; returns the final path."""

        await self._limiter.wait()
        try:
            data = await self._client.download_media(ContentURI(reference.url))
        except (MatrixError, aiohttp.ClientError) as exc:
            raise TransportError(f"Failed to download {reference.url}: {exc}") from exc

        path = os.path.join(self._output_dir, reference.filename())
        partial = path + _PARTIAL_SUFFIX
        try:
            with open(partial, "wb") as handle:
                handle.write(data)
            os.replace(partial, path)
        except OSError:
            if os.path.exists(partial):
                os.remove(partial)
            raise
        return path
