"""Error taxonomy for the archive core.

Adapters translate library-specific failures into these types so the core
never has to know which Matrix or storage library raised them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from core.models import ImportReport


class ArchiveError(Exception):
    """Base exception for all expected archive errors."""

    message: str

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ArchiveError):
    """Missing or invalid configuration (config.json, environment)."""


class TransportError(ArchiveError):
    """A page fetch or decrypt call failed or timed out."""


class DecryptionError(ArchiveError):
    """The decrypt capability could not produce plaintext for an event."""


class ValidationError(ArchiveError):
    """A normalized record broke one of the Matrix identifier invariants."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class SyncError(ArchiveError):
    """Every configured room failed with a transport error."""

    def __init__(self, message: str, report: Optional["ImportReport"] = None) -> None:
        super().__init__(message)
        self.report = report
