"""Matrix client factory for matrix-archive.

We explicitly manage the client's lifecycle (build, health check, close) so
it is obvious when the HTTP session is created and when it ends. Nothing here
logs in: an access token for an existing device is expected in the
environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import aiohttp
from dotenv import load_dotenv
from mautrix.client import Client
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.errors import MatrixError
from mautrix.types import RoomID, UserID

from core.errors import ConfigurationError, TransportError

LOGGER = logging.getLogger(__name__)

# Environment values never written to logs.
SECRET_ENV_VARS = ("MATRIX_ACCESS_TOKEN", "MATRIX_PICKLE_KEY")


class ArchiveStateStore(MemoryStateStore):
    """MemoryStateStore plus the ``find_shared_rooms`` the OlmMachine needs."""

    async def find_shared_rooms(self, user_id: UserID) -> list[RoomID]:
        return [room_id for room_id, members in self.members.items() if user_id in members]


@dataclass(frozen=True)
class MatrixCredentials:
    homeserver: str
    user_id: str
    access_token: str
    device_id: str
    pickle_key: str


def load_credentials() -> MatrixCredentials:
    """Read Matrix credentials via python-dotenv to keep secrets out of the repo."""

    load_dotenv()

    homeserver = os.getenv("MATRIX_HOMESERVER", "")
    user_id = os.getenv("MATRIX_USER_ID", "")
    access_token = os.getenv("MATRIX_ACCESS_TOKEN", "")

    # Fail fast on missing credentials instead of a 401 halfway through a walk.
    missing = [
        name
        for name, value in (
            ("MATRIX_HOMESERVER", homeserver),
            ("MATRIX_USER_ID", user_id),
            ("MATRIX_ACCESS_TOKEN", access_token),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Missing {', '.join(missing)} in environment")

    return MatrixCredentials(
        homeserver=homeserver,
        user_id=user_id,
        access_token=access_token,
        device_id=os.getenv("MATRIX_DEVICE_ID", ""),
        pickle_key=os.getenv("MATRIX_PICKLE_KEY", "matrix-archive"),
    )


def build_client(credentials: MatrixCredentials) -> Client:
    """Create a mautrix client; the caller owns it and must ``close_client`` it."""

    LOGGER.info("Initializing Matrix client for %s on %s", credentials.user_id, credentials.homeserver)
    return Client(
        mxid=UserID(credentials.user_id),
        device_id=credentials.device_id,
        base_url=credentials.homeserver,
        token=credentials.access_token,
        state_store=ArchiveStateStore(),
    )


async def check_connection(client: Client) -> str:
    """Verify the token with ``whoami`` and return the authenticated user id."""

    try:
        whoami = await client.whoami()
    except (MatrixError, aiohttp.ClientError) as exc:
        raise TransportError(f"Matrix health check failed: {exc}") from exc
    LOGGER.info("Authenticated as %s (device %s)", whoami.user_id, whoami.device_id)
    return str(whoami.user_id)


async def close_client(client: Client) -> None:
    await client.api.session.close()
