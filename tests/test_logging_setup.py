from __future__ import annotations

import logging
from pathlib import Path

import pytest

from logging_setup import SecretMaskingFormatter, build_handlers, secret_values


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("client", logging.INFO, __file__, 1, message, None, None)


def test_formatter_masks_secret_values_by_name() -> None:
    formatter = SecretMaskingFormatter({"MATRIX_ACCESS_TOKEN": "syt_abc", "MATRIX_PICKLE_KEY": ""})

    line = formatter.format(_record("GET /sync?access_token=syt_abc failed"))

    assert "syt_abc" not in line
    assert "access_token=<MATRIX_ACCESS_TOKEN>" in line


def test_longer_secret_is_masked_before_its_prefix() -> None:
    formatter = SecretMaskingFormatter({"SHORT": "abc", "LONG": "abcdef"})

    assert formatter.format(_record("token abcdef")).endswith("token <LONG>")


def test_secret_values_default_to_client_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MATRIX_ACCESS_TOKEN", "syt_abc")
    monkeypatch.delenv("MATRIX_PICKLE_KEY", raising=False)
    monkeypatch.setenv("BRIDGE_TOKEN", "bridge")

    assert secret_values() == {"MATRIX_ACCESS_TOKEN": "syt_abc"}
    assert secret_values({"env_vars": ["BRIDGE_TOKEN"]}) == {
        "MATRIX_ACCESS_TOKEN": "syt_abc",
        "BRIDGE_TOKEN": "bridge",
    }
    assert secret_values({"enabled": False}) == {}


def test_file_handler_is_created_under_project_root(tmp_path: Path) -> None:
    config = {"console": False, "file": {"enabled": True, "path": "logs/archive.log"}}

    handlers = build_handlers(config, str(tmp_path))
    try:
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, SecretMaskingFormatter)
        assert (tmp_path / "logs").is_dir()
    finally:
        for handler in handlers:
            handler.close()
