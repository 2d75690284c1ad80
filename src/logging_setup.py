"""Logging configuration for matrix-archive.

Handlers come from the ``logging`` section of config.json. Every handler shares
one formatter that masks the values of secret environment variables, so an
access token echoed by mautrix or aiohttp never reaches the console or disk.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Mapping, Optional

from client import SECRET_ENV_VARS

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_FILE = "logs/matrix_archive.log"


class SecretMaskingFormatter(logging.Formatter):
    """Replaces each known secret value with the name of its variable."""

    def __init__(self, secrets: Mapping[str, str], fmt: str = LOG_FORMAT, datefmt: str = DATE_FORMAT) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        # Longest first so a secret containing another is masked whole.
        self._secrets = sorted(
            ((value, name) for name, value in secrets.items() if value),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for value, name in self._secrets:
            message = message.replace(value, f"<{name}>")
        return message


def secret_values(redact_config: Optional[Mapping] = None) -> dict[str, str]:
    """Map each secret variable name to its current value.

    ``redact.env_vars`` in config.json adds names to ``SECRET_ENV_VARS``;
    ``redact.enabled: false`` turns masking off.
    """

    redact_config = redact_config or {}
    if not redact_config.get("enabled", True):
        return {}
    names = list(SECRET_ENV_VARS)
    names.extend(name for name in redact_config.get("env_vars", []) if name not in names)
    return {name: os.environ[name] for name in names if os.environ.get(name)}


def _file_handler(file_config: Mapping, project_root: str) -> RotatingFileHandler:
    path = file_config.get("path", DEFAULT_LOG_FILE)
    if not os.path.isabs(path):
        path = os.path.join(project_root, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return RotatingFileHandler(
        path,
        maxBytes=int(file_config.get("max_bytes", 5 * 1024 * 1024)),
        backupCount=int(file_config.get("backup_count", 5)),
        encoding="utf-8",
    )


def build_handlers(config: Mapping, project_root: str) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())
    file_config = config.get("file", {})
    if file_config.get("enabled", False):
        handlers.append(_file_handler(file_config, project_root))

    formatter = SecretMaskingFormatter(secret_values(config.get("redact")))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(config: Optional[Mapping], project_root: str) -> None:
    """Install the configured handlers on the root logger; no-op when disabled."""

    if not config or not config.get("enabled", False):
        return
    handlers = build_handlers(config, project_root)
    if not handlers:
        return
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=handlers)
