"""Static configuration for matrix-archive.

All user-editable settings (rooms, sync pacing, crypto, correlator knobs,
logging) live in a single JSON file for quick edits without touching Python.
Secrets stay in the environment (see client.py).
"""

import json
import os
from dataclasses import fields

from dotenv import load_dotenv

from core.config import CorrelatorConfig, SyncConfig
from core.errors import ConfigurationError

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise ConfigurationError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _merge_rooms(configured: list[str], env_value: str) -> list[str]:
    """Configured rooms first, then MATRIX_ROOM_IDS, without repeats."""

    rooms: list[str] = []
    for room_id in list(configured) + env_value.split(","):
        room_id = room_id.strip()
        if room_id and room_id not in rooms:
            rooms.append(room_id)
    return rooms


def _dataclass_kwargs(cls, raw: dict) -> dict:
    # Unknown keys are ignored so older config files keep loading.
    names = {field.name for field in fields(cls)}
    return {key: value for key, value in raw.items() if key in names}


_CONFIG = _load_json_config()
load_dotenv()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Rooms to import when no --room is given.
ROOMS = _merge_rooms(_CONFIG.get("rooms", []), os.getenv("MATRIX_ROOM_IDS", ""))

# Where to store the SQLite message archive.
_database = _CONFIG.get("database", {})
DB_PATH = _database.get("path", "matrix_archive.db")
if not os.path.isabs(DB_PATH):
    DB_PATH = os.path.join(PROJECT_ROOT, DB_PATH)

# History walk pacing: page size, batch size, timeouts and request rate.
SYNC = SyncConfig(**_dataclass_kwargs(SyncConfig, _CONFIG.get("sync", {})))

# Megolm decryption is optional and needs the crypto extra installed.
_crypto = _CONFIG.get("crypto", {})
CRYPTO_ENABLED = bool(_crypto.get("enabled", False))
CRYPTO_STORE_PATH = _crypto.get("store_path", "data/matrix_crypto.db")
if not os.path.isabs(CRYPTO_STORE_PATH):
    CRYPTO_STORE_PATH = os.path.join(PROJECT_ROOT, CRYPTO_STORE_PATH)

# Bridge identity heuristics; JSON lists become tuples for the frozen dataclass.
_correlator = _dataclass_kwargs(CorrelatorConfig, _CONFIG.get("correlator", {}))
if "platforms" in _correlator:
    _correlator["platforms"] = tuple(_correlator["platforms"])
CORRELATOR = CorrelatorConfig(**_correlator)

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
