"""Inventory effects parsed out of game-master narration.

Narration is untrusted free text. Each line may carry at most one
`[GAIN item]` and one `[LOSE item]` tag; anything malformed is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from storysync.state import SessionStore

logger = logging.getLogger(__name__)

GAIN_TAG = re.compile(r"\[GAIN (.*?)\]", re.IGNORECASE)
LOSE_TAG = re.compile(r"\[LOSE (.*?)\]", re.IGNORECASE)


class EffectKind(str, Enum):
    GRANT = "grant"
    REMOVE = "remove"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    item: str


def _tag_value(line: str, tag: re.Pattern[str]) -> str:
    """Text between the first opener and the next closing bracket, trimmed."""
    match = tag.search(line)
    return match.group(1).strip() if match else ""


def extract(text: str) -> list[Effect]:
    effects: list[Effect] = []
    for line in text.splitlines():
        gain = _tag_value(line, GAIN_TAG)
        if gain:
            effects.append(Effect(EffectKind.GRANT, gain))
        lose = _tag_value(line, LOSE_TAG)
        if lose:
            effects.append(Effect(EffectKind.REMOVE, lose))
    return effects


def apply(effects: list[Effect], store: SessionStore) -> None:
    for effect in effects:
        logger.debug("applying %s %r", effect.kind.value, effect.item)
        if effect.kind is EffectKind.GRANT:
            store.grant_item(effect.item)
        else:
            store.remove_item(effect.item)
