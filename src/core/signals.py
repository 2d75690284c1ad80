"""Username signal extractors for bridged puppet senders.

Each extractor is a pure function ``(text, config) -> [signal]``. They know
nothing about who sent the text or where it sits in the room; gating by
sender and distributing proximity signals is the correlator's job.

Bridges render remote identities as ``<name:platform>`` in plain bodies and
``&lt;name:platform&gt;`` in HTML bodies, so every bracketed pattern has an
escaped twin.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Callable, Iterable, List, Optional, Pattern

from core.config import CorrelatorConfig

CONTEXT_SELF_MENTION = "self-mention"
CONTEXT_BRIDGE_MENTION = "bridge-mention"
CONTEXT_BRIDGE_REPLY = "bridge-reply"
CONTEXT_HREF_LINK = "href-link"
CONTEXT_BRIDGE_REPLACEMENT = "bridge-replacement"
CONTEXT_MULTI_PLATFORM = "multi-platform"


@dataclass(frozen=True)
class BridgeCorrelationSignal:
    """One observation tying a username to a platform."""

    username: str
    platform: str
    confidence: float
    observed_at: Optional[datetime]
    context: str


@dataclass(frozen=True)
class _Patterns:
    mention: Pattern[str]
    html_mention: Pattern[str]
    bridge_reply: Pattern[str]
    html_bridge_reply: Pattern[str]
    bridge_mention: Pattern[str]
    html_bridge_mention: Pattern[str]
    href_link: Pattern[str]
    bridge_replacement: Pattern[str]
    multi_platform: Pattern[str]


@lru_cache(maxsize=16)
def _compile(bot_name: str, platforms: tuple[str, ...]) -> _Patterns:
    platform = "(" + "|".join(re.escape(p) for p in platforms) + ")"
    bot = "@" + re.escape(bot_name)
    mention = rf"<([^@<>\s][^<>]*?):{platform}>"
    html_mention = rf"&lt;([^@&\s][^&]*?):{platform}&gt;"
    return _Patterns(
        mention=re.compile(mention),
        html_mention=re.compile(html_mention),
        bridge_reply=re.compile(rf"\(re {bot}: {mention}", re.IGNORECASE),
        html_bridge_reply=re.compile(rf"\(re {bot}: {html_mention}", re.IGNORECASE),
        bridge_mention=re.compile(rf"{bot}:\s*{mention}", re.IGNORECASE),
        html_bridge_mention=re.compile(rf"{bot}:\s*{html_mention}", re.IGNORECASE),
        href_link=re.compile(rf'<a href="([^@"][^"]*?):{platform}">[^<]+</a>'),
        bridge_replacement=re.compile(rf"{bot}:\s*([^:\s<&][^:\s]*):{platform}\b", re.IGNORECASE),
        # Bare ``name:platform`` only; the lookbehind keeps bracketed and
        # escaped forms out.
        multi_platform=re.compile(rf"(?<![<;\w@\"])([^@\s<>&;\"()]+):{platform}\b"),
    )


def _patterns(config: CorrelatorConfig) -> _Patterns:
    return _compile(config.bridge_bot_name, tuple(config.platforms))


def _collect(
    patterns: Iterable[Pattern[str]],
    text: str,
    confidence: float,
    context: str,
    observed_at: Optional[datetime],
) -> List[BridgeCorrelationSignal]:
    signals: List[BridgeCorrelationSignal] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            signals.append(
                BridgeCorrelationSignal(
                    username=match.group(1).strip(),
                    platform=match.group(2).lower(),
                    confidence=confidence,
                    observed_at=observed_at,
                    context=context,
                )
            )
    return signals


def extract_self_mentions(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """``<name:platform>`` written by the sender, ignoring bot-quoted replies."""

    patterns = _patterns(config)
    # A quoted "(re @bot: <name:platform>" names someone else.
    for quoted in (
        patterns.bridge_reply,
        patterns.html_bridge_reply,
        patterns.bridge_mention,
        patterns.html_bridge_mention,
    ):
        text = quoted.sub(" ", text)
    return _collect(
        (patterns.mention, patterns.html_mention),
        text,
        config.self_mention_weight,
        CONTEXT_SELF_MENTION,
        observed_at,
    )


def extract_bridge_mentions(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """``@Bot: <name:platform>`` addressed through the relay bot."""

    patterns = _patterns(config)
    return _collect(
        (patterns.bridge_mention, patterns.html_bridge_mention),
        text,
        config.bridge_mention_weight,
        CONTEXT_BRIDGE_MENTION,
        observed_at,
    )


def extract_bridge_replies(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """``(re @Bot: <name:platform>`` reply headers.

    Signals carry the undecayed ``proximity_base``; the correlator scales them
    by distance to each nearby puppet message.
    """

    patterns = _patterns(config)
    return _collect(
        (patterns.bridge_reply, patterns.html_bridge_reply),
        text,
        config.proximity_base,
        CONTEXT_BRIDGE_REPLY,
        observed_at,
    )


def extract_href_links(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """``<a href="name:platform">`` links in formatted bodies."""

    return _collect(
        (_patterns(config).href_link,),
        text,
        config.href_link_weight,
        CONTEXT_HREF_LINK,
        observed_at,
    )


def extract_bridge_replacements(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """``@Bot: name:platform`` where the bridge dropped the angle brackets."""

    return _collect(
        (_patterns(config).bridge_replacement,),
        text,
        config.bridge_replacement_weight,
        CONTEXT_BRIDGE_REPLACEMENT,
        observed_at,
    )


def extract_multi_platform(
    text: str, config: CorrelatorConfig, observed_at: Optional[datetime] = None
) -> List[BridgeCorrelationSignal]:
    """Any bare ``name:platform`` token."""

    return _collect(
        (_patterns(config).multi_platform,),
        text,
        config.multi_platform_weight,
        CONTEXT_MULTI_PLATFORM,
        observed_at,
    )


def count_mentions(text: str, config: CorrelatorConfig) -> List[tuple[str, str]]:
    """``(username, platform)`` for every ``<name:platform>``, for the frequency fallback."""

    patterns = _patterns(config)
    mentions: List[tuple[str, str]] = []
    for pattern in (patterns.mention, patterns.html_mention):
        mentions.extend(
            (match.group(1).strip(), match.group(2).lower()) for match in pattern.finditer(text)
        )
    return mentions


Extractor = Callable[[str, CorrelatorConfig, Optional[datetime]], List[BridgeCorrelationSignal]]

# Extractors applied to a puppet's own message, in scan order. Scan order is
# also tie-break order.
SENDER_EXTRACTORS: tuple[Extractor, ...] = (
    extract_self_mentions,
    extract_bridge_mentions,
    extract_href_links,
    extract_bridge_replacements,
    extract_multi_platform,
)
