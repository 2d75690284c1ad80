"""Megolm decrypt adapter.

Implements the core DecryptorPort with mautrix's ``OlmMachine`` backed by a
SQLite crypto store. Importing this module needs python-olm (the
``mautrix[e2be]`` extra), so the app only imports it when crypto is enabled.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import aiohttp
from mautrix.client import Client
from mautrix.crypto import OlmMachine
from mautrix.crypto.store import PgCryptoStore
from mautrix.errors import DecryptionError as MautrixDecryptionError
from mautrix.errors import MatrixError
from mautrix.types import EncryptedEvent, SerializerError
from mautrix.util.async_db import Database

from core.errors import DecryptionError, TransportError

LOGGER = logging.getLogger(__name__)


class OlmDecryptor:
    """One decrypt attempt per event; never requests missing keys."""

    def __init__(self, olm: OlmMachine, db: Database) -> None:
        self._olm = olm
        self._db = db

    async def decrypt(self, event: dict[str, Any]) -> dict[str, Any]:
        try:
            encrypted = EncryptedEvent.deserialize(event)
        except SerializerError as exc:
            raise DecryptionError(f"Unreadable encrypted event: {exc}") from exc

        try:
            decrypted = await self._olm.decrypt_megolm_event(encrypted)
        except MautrixDecryptionError as exc:
            raise DecryptionError(str(exc)) from exc
        except (MatrixError, aiohttp.ClientError) as exc:
            raise TransportError(f"Decrypt of {encrypted.event_id} failed: {exc}") from exc
        return decrypted.serialize()

    async def close(self) -> None:
        await self._db.stop()


async def build_decryptor(client: Client, store_path: str, pickle_key: str) -> OlmDecryptor:
    """Open the crypto store, load the Olm account and return the decryptor.

    The client's state store must provide ``find_shared_rooms`` (see
    ``client.ArchiveStateStore``).
    """

    db_path = Path(store_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database.create(
        f"sqlite:///{db_path.resolve()}",
        upgrade_table=PgCryptoStore.upgrade_table,
    )
    await db.start()

    crypto_store = PgCryptoStore(
        account_id=str(client.mxid),
        pickle_key=pickle_key,
        db=db,
    )
    olm = OlmMachine(
        client=client,
        crypto_store=crypto_store,
        state_store=client.state_store,
    )
    await olm.load()
    client.crypto = olm

    LOGGER.info("Crypto store ready for device_id=%s (store=%s)", client.device_id, db_path)
    return OlmDecryptor(olm, db)
