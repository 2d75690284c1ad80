"""Bridge identity correlation.

Relay bridges post on behalf of many remote users through puppet accounts
whose Matrix ids say nothing about who is behind them. This module reduces
textual signals from a room's archived messages to one best-guess username
per puppet sender.

Reduction order:
1) Scan each puppet's own messages with the sender extractors
2) Spread every bot reply header onto nearby puppet messages, decaying with
   message-index distance down to a floor
3) Sum confidence per (sender, username); highest total wins, ties go to the
   candidate observed first
4) Senders without an accepted candidate fall back to raw mention frequency

The result depends only on the ordered message list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence

from core.config import CorrelatorConfig
from core.content import content_texts
from core.models import Message, MessageFilter
from core.ports import MessageStorePort
from core.signals import (
    SENDER_EXTRACTORS,
    BridgeCorrelationSignal,
    count_mentions,
    extract_bridge_replies,
)

LOGGER = logging.getLogger(__name__)

METHOD_CONFIDENCE = "confidence"
METHOD_FREQUENCY = "frequency"

_LOCALPART = re.compile(r"^@(.+):.+$")


@dataclass(frozen=True)
class IdentityMatch:
    """The winning username for one puppet sender and how it was chosen."""

    username: str
    platform: str
    score: float
    method: str


@dataclass
class IdentityMap:
    """Puppet sender id -> best username, with the scores behind it."""

    matches: dict[str, IdentityMatch] = field(default_factory=dict)

    def get(self, sender: str) -> Optional[str]:
        match = self.matches.get(sender)
        return match.username if match else None

    def as_dict(self) -> dict[str, str]:
        return {sender: match.username for sender, match in self.matches.items()}

    def __contains__(self, sender: object) -> bool:
        return sender in self.matches

    def __len__(self) -> int:
        return len(self.matches)


def _dedupe(signals: Iterable[BridgeCorrelationSignal]) -> List[BridgeCorrelationSignal]:
    # Body and formatted_body usually repeat the same mention; count it once
    # per message.
    seen: set[tuple[str, str, str]] = set()
    unique: List[BridgeCorrelationSignal] = []
    for signal in signals:
        key = (signal.context, signal.username, signal.platform)
        if key in seen:
            continue
        seen.add(key)
        unique.append(signal)
    return unique


def _sender_signals(message: Message, config: CorrelatorConfig) -> List[BridgeCorrelationSignal]:
    signals: List[BridgeCorrelationSignal] = []
    for extractor in SENDER_EXTRACTORS:
        for text in content_texts(message.content):
            signals.extend(extractor(text, config, message.timestamp))
    return _dedupe(signals)


def proximity_confidence(distance: int, config: CorrelatorConfig) -> float:
    """Linear decay from ``proximity_base`` by index distance, never below the floor."""

    return max(config.proximity_floor, config.proximity_base - distance * config.proximity_decay)


def gather_signals(
    messages: Sequence[Message], config: CorrelatorConfig
) -> dict[str, List[BridgeCorrelationSignal]]:
    """Return every accepted signal per puppet sender, in observation order."""

    by_sender: dict[str, List[BridgeCorrelationSignal]] = {}

    def _add(sender: str, signal: BridgeCorrelationSignal) -> None:
        by_sender.setdefault(sender, []).append(signal)

    for index, message in enumerate(messages):
        if config.is_puppet(message.sender):
            for signal in _sender_signals(message, config):
                _add(message.sender, signal)

        replies = _dedupe(
            signal
            for text in content_texts(message.content)
            for signal in extract_bridge_replies(text, config, message.timestamp)
        )
        if not replies:
            continue

        start = max(0, index - config.proximity_window)
        stop = min(len(messages) - 1, index + config.proximity_window)
        for reply in replies:
            for nearby_index in range(start, stop + 1):
                nearby = messages[nearby_index]
                if not config.is_puppet(nearby.sender):
                    continue
                distance = abs(index - nearby_index)
                _add(
                    nearby.sender,
                    replace(
                        reply,
                        confidence=proximity_confidence(distance, config),
                        observed_at=nearby.timestamp,
                        context=f"{reply.context}-dist-{distance}",
                    ),
                )
    return by_sender


Candidate = tuple[str, str]


def _best_candidate(totals: dict[Candidate, float]) -> Optional[tuple[Candidate, float]]:
    # dicts keep insertion order, so strict ``>`` leaves ties with the first
    # observed candidate.
    best: Optional[tuple[Candidate, float]] = None
    for candidate, score in totals.items():
        if best is None or score > best[1]:
            best = (candidate, score)
    return best


def _mention_frequencies(
    messages: Sequence[Message], config: CorrelatorConfig
) -> dict[str, dict[Candidate, float]]:
    counts: dict[str, dict[Candidate, float]] = {}
    for message in messages:
        if not config.is_puppet(message.sender):
            continue
        for text in content_texts(message.content):
            for candidate in count_mentions(text, config):
                per_sender = counts.setdefault(message.sender, {})
                per_sender[candidate] = per_sender.get(candidate, 0.0) + 1
    return counts


def correlate(messages: Sequence[Message], config: CorrelatorConfig) -> IdentityMap:
    """Build the identity map for an ordered list of one room's messages."""

    identity_map = IdentityMap()

    for sender, signals in gather_signals(messages, config).items():
        totals: dict[Candidate, float] = {}
        for signal in signals:
            candidate = (signal.username, signal.platform)
            totals[candidate] = totals.get(candidate, 0.0) + signal.confidence
        best = _best_candidate(totals)
        if best is None or best[1] < config.min_confidence:
            continue
        (username, platform), score = best
        identity_map.matches[sender] = IdentityMatch(username, platform, score, METHOD_CONFIDENCE)
        LOGGER.debug("Mapped %s -> %s (confidence: %.2f)", sender, username, score)

    for sender, counts in _mention_frequencies(messages, config).items():
        if sender in identity_map:
            continue
        best = _best_candidate(counts)
        if best is None:
            continue
        (username, platform), count = best
        identity_map.matches[sender] = IdentityMatch(username, platform, count, METHOD_FREQUENCY)
        LOGGER.debug("Mapped %s -> %s (frequency: %d)", sender, username, int(count))

    LOGGER.info("Built bridge identity map for %s puppet senders", len(identity_map))
    return identity_map


class IdentityCorrelator:
    """Read-only correlator over a store; every call rebuilds from scratch."""

    def __init__(self, store: MessageStorePort, config: CorrelatorConfig) -> None:
        self._store = store
        self._config = config

    def build_identity_map(self, room_id: str) -> IdentityMap:
        messages = self._store.query(MessageFilter(room_id=room_id))
        LOGGER.info("Correlating %s messages in %s", len(messages), room_id)
        return correlate(messages, self._config)


def sender_localpart(sender: str) -> str:
    """``@name:server`` -> ``name``; anything else is returned unchanged."""

    match = _LOCALPART.match(sender)
    return match.group(1) if match else sender


def display_name_for(sender: str, identity_map: IdentityMap) -> str:
    """Mapped username for a puppet, otherwise the sender's own localpart."""

    return identity_map.get(sender) or sender_localpart(sender)
