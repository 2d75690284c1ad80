"""Core configuration dataclasses.

settings.py turns config.json into these frozen objects; the core never reads
JSON or the environment itself.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    """History walk settings for the sync controller."""

    page_size: int = 100
    batch_size: int = 100
    fetch_timeout_seconds: float = 30.0
    decrypt_timeout_seconds: float = 10.0
    requests_per_second: float = 10.0


@dataclass(frozen=True)
class CorrelatorConfig:
    """Heuristic knobs for the bridge identity correlator.

    Only the relative order of the weights matters: a self-mention scores
    highest, proximity starts at ``proximity_base`` and decays toward
    ``proximity_floor``, and link or generic mentions stay below bridge
    mentions.
    """

    puppet_marker: str = "discordgo_"
    bridge_bot_name: str = "GrapheneOSBridgeBot"
    platforms: tuple[str, ...] = ("discord",)

    self_mention_weight: float = 1.0
    bridge_mention_weight: float = 0.9
    href_link_weight: float = 0.7
    bridge_replacement_weight: float = 0.7
    multi_platform_weight: float = 0.6

    proximity_base: float = 0.9
    proximity_decay: float = 0.05
    proximity_floor: float = 0.3
    proximity_window: int = 10

    # Summed confidence a candidate needs before the frequency fallback is skipped.
    min_confidence: float = 0.0

    def is_puppet(self, sender: str) -> bool:
        return bool(self.puppet_marker) and self.puppet_marker in sender
