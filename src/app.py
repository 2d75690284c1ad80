"""Application entry point for matrix-archive."""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from typing import Optional

from art import tprint

import settings
from adapters.matrix_client import MatrixEventSource
from adapters.media_download import MediaDownloader
from adapters.sqlite_storage import SQLiteMessageStore
from client import build_client, check_connection, close_client, load_credentials
from core.correlator import IdentityCorrelator, display_name_for
from core.errors import ArchiveError, SyncError
from core.media import ALL_MEDIA_MSGTYPES, IMAGE_MSGTYPES
from core.models import ImportReport, MessageFilter
from core.normalizer import EventNormalizer
from core.sync import RateLimiter, RoomSynchronizer
from logging_setup import configure_logging

NAME = "MATRIX ARCHIVE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


def _open_store() -> SQLiteMessageStore:
    store = SQLiteMessageStore(settings.DB_PATH)
    store.init_db()
    return store


def _print_import_report(report: ImportReport) -> None:
    for room in report.rooms:
        status = "ok" if room.ok else f"FAILED ({room.error})"
        skipped = sum(room.skipped.values())
        print(
            f"{room.room_id}: {room.imported} imported, {room.duplicates} duplicates, "
            f"{skipped} skipped, {room.failed} failed - {status}"
        )
    print(f"Total imported: {report.imported}")


async def _import(room_ids: list[str], limit: int) -> int:
    store = _open_store()
    credentials = load_credentials()
    client = build_client(credentials)
    decryptor = None
    try:
        await check_connection(client)

        if settings.CRYPTO_ENABLED:
            # python-olm is only needed when decryption is switched on.
            from adapters.matrix_crypto import build_decryptor

            decryptor = await build_decryptor(
                client,
                settings.CRYPTO_STORE_PATH,
                credentials.pickle_key,
            )

        synchronizer = RoomSynchronizer(
            source=MatrixEventSource(client),
            store=store,
            normalizer=EventNormalizer(decryptor, settings.SYNC.decrypt_timeout_seconds),
            config=settings.SYNC,
        )
        try:
            report = await synchronizer.synchronize_rooms(room_ids, limit)
        except SyncError as exc:
            if exc.report is not None:
                _print_import_report(exc.report)
            LOGGER.error("%s", exc.message)
            return 1
        _print_import_report(report)
        return 0
    finally:
        if decryptor is not None:
            await decryptor.close()
        await close_client(client)


def _identities(room_id: str) -> int:
    store = _open_store()
    correlator = IdentityCorrelator(store, settings.CORRELATOR)
    identity_map = correlator.build_identity_map(room_id)
    if not identity_map:
        print(f"No bridge identities found in {room_id}")
        return 0
    for sender, match in identity_map.matches.items():
        print(
            f"{sender} -> {display_name_for(sender, identity_map)} "
            f"({match.platform}, {match.method}: {match.score:.2f})"
        )
    return 0


async def _list_rooms(pattern: Optional[str]) -> int:
    name_filter = re.compile(pattern) if pattern else None
    client = build_client(load_credentials())
    try:
        await check_connection(client)
        source = MatrixEventSource(client)
        room_ids = await source.joined_rooms()
        print(f"Found {len(room_ids)} joined rooms. Fetching room names...")
        for room_id in room_ids:
            name = await source.room_name(room_id)
            if name_filter and not name_filter.search(name):
                continue
            print(f"{room_id}\t{name}")
    finally:
        await close_client(client)
    return 0


async def _download_media(
    output_dir: Optional[str],
    thumbnails: bool,
    room_id: Optional[str],
    all_media: bool,
) -> int:
    store = _open_store()
    output_dir = output_dir or ("thumbnails" if thumbnails else "images")
    client = build_client(load_credentials())
    try:
        await check_connection(client)
        downloader = MediaDownloader(
            client,
            store,
            output_dir,
            prefer_thumbnails=thumbnails,
            msgtypes=ALL_MEDIA_MSGTYPES if all_media else IMAGE_MSGTYPES,
            rate_limiter=RateLimiter(settings.SYNC.requests_per_second),
        )
        report = await downloader.download_all(MessageFilter(room_id=room_id))
    finally:
        await close_client(client)

    print(
        f"{report.referenced} media messages: {report.downloaded} downloaded, "
        f"{report.already_present} already present, {len(report.failed)} failed"
    )
    return 1 if report.failed and not report.downloaded else 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="matrix-archive")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import room history into the archive")
    import_parser.add_argument("--limit", type=int, default=0, help="Max new messages per room (0 = all)")
    import_parser.add_argument(
        "--room",
        action="append",
        dest="rooms",
        help="Room id to import; repeatable. Defaults to configured rooms.",
    )

    identities_parser = subparsers.add_parser(
        "identities",
        help="Show the bridge puppet -> username map for an archived room",
    )
    identities_parser.add_argument("--room", required=True, help="Room id")

    rooms_parser = subparsers.add_parser("list-rooms", help="List joined rooms")
    rooms_parser.add_argument("pattern", nargs="?", help="Regex matched against room names")

    media_parser = subparsers.add_parser("download-media", help="Download media referenced by archived messages")
    media_parser.add_argument("output_dir", nargs="?", help="Target directory (default: images or thumbnails)")
    media_parser.add_argument("--thumbnails", action="store_true", help="Prefer thumbnails over full-size files")
    media_parser.add_argument("--room", help="Only media from this room")
    media_parser.add_argument("--all-media", action="store_true", help="Include video, audio and file messages")

    args = parser.parse_args(argv)
    _print_banner()
    configure_logging(settings.LOGGING, settings.PROJECT_ROOT)

    try:
        if args.command == "import":
            room_ids = args.rooms or settings.ROOMS
            if not room_ids:
                parser.error("no rooms given; use --room or set rooms / MATRIX_ROOM_IDS")
            exit_code = asyncio.run(_import(room_ids, args.limit))
        elif args.command == "identities":
            exit_code = _identities(args.room)
        elif args.command == "download-media":
            exit_code = asyncio.run(
                _download_media(args.output_dir, args.thumbnails, args.room, args.all_media)
            )
        else:
            exit_code = asyncio.run(_list_rooms(args.pattern))
    except ArchiveError as exc:
        LOGGER.error("%s", exc.message)
        print(f"Error: {exc.message}", file=sys.stderr)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
