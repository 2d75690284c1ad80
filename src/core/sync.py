"""Room history sync controller.

Walks a room backward through pagination tokens, normalizes each page and
persists it in bounded batches. This module is integration-agnostic: it only
talks to the event source, normalizer and store through their ports.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from core.config import SyncConfig
from core.errors import SyncError, TransportError
from core.models import (
    EventPage,
    Failed,
    ImportCursor,
    ImportReport,
    Inserted,
    Message,
    RoomReport,
    SkipReason,
    Skipped,
    WalkState,
)
from core.normalizer import EventNormalizer
from core.ports import EventSourcePort, MessageStorePort

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Spaces calls at least ``1 / requests_per_second`` apart; 0 disables it."""

    def __init__(
        self,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._next_slot: Optional[float] = None

    async def wait(self) -> None:
        if self._interval <= 0:
            return
        now = self._clock()
        if self._next_slot is not None and self._next_slot > now:
            await self._sleep(self._next_slot - now)
            now = self._next_slot
        self._next_slot = now + self._interval


class RoomSynchronizer:
    """Imports room history into the store, one room at a time."""

    def __init__(
        self,
        source: EventSourcePort,
        store: MessageStorePort,
        normalizer: EventNormalizer,
        config: SyncConfig,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._source = source
        self._store = store
        self._normalizer = normalizer
        self._config = config
        self._limiter = rate_limiter or RateLimiter(config.requests_per_second)

    async def synchronize(self, room_id: str, limit: int = 0) -> RoomReport:
        """Import up to ``limit`` new messages from ``room_id`` (0 means all).

        No error escapes: a failure ends the walk with ``report.error`` set
        after whatever was already normalized has been persisted.
        """

        report = RoomReport(room_id=room_id)
        cursor = ImportCursor(room_id=room_id)
        LOGGER.info("Importing history for %s", room_id)

        try:
            await self._walk(report, cursor, limit)
        except TransportError as exc:
            return self._fail(report, exc.message)
        except Exception as exc:
            LOGGER.exception("Unexpected error while importing %s", room_id)
            return self._fail(report, f"{type(exc).__name__}: {exc}")

        report.state = WalkState.DONE
        LOGGER.info(
            "Finished %s: %s imported, %s duplicates, %s skipped, %s failed",
            room_id,
            report.imported,
            report.duplicates,
            sum(report.skipped.values()),
            report.failed,
        )
        return report

    async def _walk(self, report: RoomReport, cursor: ImportCursor, limit: int) -> None:
        while not self._limit_reached(cursor, limit):
            report.state = WalkState.FETCHING
            page = await self._fetch(cursor.room_id, cursor.token)

            report.pages += 1
            report.events_read += len(page.events)
            if not page.events:
                return

            await self._import_page(page, report, cursor, limit)

            if not page.next_token:
                return
            cursor.token = page.next_token
            LOGGER.debug(
                "%s: %s imported so far, next token %s", cursor.room_id, cursor.imported, cursor.token
            )

    async def synchronize_rooms(self, room_ids: Iterable[str], limit: int = 0) -> ImportReport:
        """Import every room in turn; one failed room never stops the others."""

        report = ImportReport()
        for room_id in room_ids:
            room_report = await self.synchronize(room_id, limit)
            report.rooms.append(room_report)
            if not room_report.ok:
                LOGGER.error("Failed to import %s: %s (continuing)", room_id, room_report.error)

        LOGGER.info(
            "Import complete: %s new messages, %s messages in store",
            report.imported,
            self._stored_total(),
        )
        if report.all_failed:
            raise SyncError(f"All {len(report.rooms)} rooms failed to import", report)
        return report

    async def _fetch(self, room_id: str, token: Optional[str]) -> EventPage:
        await self._limiter.wait()
        try:
            return await asyncio.wait_for(
                self._source.fetch_events(room_id, token, self._config.page_size),
                timeout=self._config.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Timed out fetching history for {room_id}") from exc

    async def _import_page(
        self,
        page: EventPage,
        report: RoomReport,
        cursor: ImportCursor,
        limit: int,
    ) -> None:
        batch: list[Message] = []
        report.state = WalkState.NORMALIZING_BATCH
        try:
            for event in page.events:
                if self._limit_reached(cursor, limit):
                    return
                result = await self._normalizer.normalize(event, cursor.room_id)
                if isinstance(result, Skipped):
                    LOGGER.debug("Skipped %s: %s %s", result.event_id, result.reason.value, result.detail)
                    report.record(result)
                    continue
                batch.append(result.message)
                if len(batch) >= self._batch_cap(cursor, limit):
                    self._persist(batch, report, cursor)
                    report.state = WalkState.NORMALIZING_BATCH
        finally:
            # Runs on abort too, so records normalized before a transport
            # error are still kept.
            self._persist(batch, report, cursor)

    def _batch_cap(self, cursor: ImportCursor, limit: int) -> int:
        if limit <= 0:
            return self._config.batch_size
        return max(1, min(self._config.batch_size, limit - cursor.imported))

    def _persist(self, batch: list[Message], report: RoomReport, cursor: ImportCursor) -> None:
        if not batch:
            return
        report.state = WalkState.PERSISTING_BATCH
        for result in self._store.insert_batch(batch):
            report.record(result)
            if isinstance(result, Inserted):
                cursor.imported += 1
            elif isinstance(result, Failed):
                LOGGER.error("Failed to store %s: %s", result.event_id, result.error)
            elif result.reason is SkipReason.DUPLICATE:
                LOGGER.debug("Duplicate %s already stored", result.event_id)
        batch.clear()

    @staticmethod
    def _limit_reached(cursor: ImportCursor, limit: int) -> bool:
        return limit > 0 and cursor.imported >= limit

    def _stored_total(self) -> Optional[int]:
        try:
            return self._store.count()
        except Exception as exc:
            LOGGER.warning("Could not count stored messages: %s", exc)
            return None

    @staticmethod
    def _fail(report: RoomReport, error: str) -> RoomReport:
        report.state = WalkState.FAILED
        report.error = error
        LOGGER.error("Aborting %s after %s imported: %s", report.room_id, report.imported, error)
        return report
