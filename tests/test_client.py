from __future__ import annotations

import asyncio

import pytest

import client as client_module
from core.errors import ConfigurationError


class DummyWhoami:
    user_id = "@archiver:example.org"
    device_id = "DEVICE"


class DummyClient:
    async def whoami(self) -> DummyWhoami:
        return DummyWhoami()


def test_missing_credentials_fail_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client_module, "load_dotenv", lambda: None)
    monkeypatch.setenv("MATRIX_HOMESERVER", "https://example.org")
    monkeypatch.delenv("MATRIX_USER_ID", raising=False)
    monkeypatch.delenv("MATRIX_ACCESS_TOKEN", raising=False)

    with pytest.raises(ConfigurationError) as excinfo:
        client_module.load_credentials()

    assert "MATRIX_USER_ID" in excinfo.value.message
    assert "MATRIX_ACCESS_TOKEN" in excinfo.value.message


def test_credentials_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client_module, "load_dotenv", lambda: None)
    monkeypatch.setenv("MATRIX_HOMESERVER", "https://example.org")
    monkeypatch.setenv("MATRIX_USER_ID", "@archiver:example.org")
    monkeypatch.setenv("MATRIX_ACCESS_TOKEN", "secret")
    monkeypatch.setenv("MATRIX_DEVICE_ID", "DEVICE")
    monkeypatch.delenv("MATRIX_PICKLE_KEY", raising=False)

    credentials = client_module.load_credentials()

    assert credentials.homeserver == "https://example.org"
    assert credentials.device_id == "DEVICE"
    assert credentials.pickle_key == "matrix-archive"


def test_check_connection_returns_user_id() -> None:
    assert asyncio.run(client_module.check_connection(DummyClient())) == "@archiver:example.org"


def test_state_store_finds_shared_rooms() -> None:
    store = client_module.ArchiveStateStore()
    store.members = {
        "!a:example.org": {"@bob:example.org": object()},
        "!b:example.org": {},
    }

    rooms = asyncio.run(store.find_shared_rooms("@bob:example.org"))

    assert rooms == ["!a:example.org"]
