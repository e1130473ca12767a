"""Deterministic human-friendly mate names.

Names are "<first>-<last>" drawn from two fixed pools of 32, giving 1,024
combinations with no stored state. The same inputs always give the same
name, on every platform.
"""

from __future__ import annotations

import secrets
import time
from typing import Iterator

# Neutral given names
FIRST_NAMES = (
    "alex", "sam", "jules", "chris", "casey", "jamie", "morgan", "riley",
    "quinn", "taylor", "devon", "rowan", "avery", "blake", "camer", "ellis",
    "finch", "harper", "jordan", "kendal", "logan", "parker", "reese", "river",
    "sage", "sky", "spencer", "tegan", "tyler", "valen", "wren", "yael",
)

# Neutral surnames/handles
LAST_NAMES = (
    "reed", "lane", "gray", "west", "moor", "hall", "ford", "cole",
    "ross", "knox", "hart", "stone", "field", "brook", "ridge", "shore",
    "cliff", "plain", "cross", "march", "north", "south", "delta", "plate",
    "cairn", "glass", "ember", "flare", "slate", "grain", "trace", "vein",
)

_MASK = 0xFFFFFFFF


def _code_units(text: str) -> Iterator[int]:
    """UTF-16 code units, so names match across implementations."""
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def name_hash(text: str) -> int:
    """32-bit FNV-1a."""
    h = 2166136261
    for unit in _code_units(text):
        h ^= unit
        h = (h * 16777619) & _MASK
    return h


def name_hash2(text: str) -> int:
    """32-bit shift-add hash, independent of name_hash."""
    h = 0
    for unit in _code_units(text):
        h = (unit + (h << 6) + (h << 16) - h) & _MASK
    return h


def hand_name(run_id: str, session_id: str) -> str:
    """Name whose first part follows the run and last part the session.

    Example:
        hand_name("phase-02", "session-abc123") and
        hand_name("phase-02", "session-xyz789") share a first name.
    """
    first = FIRST_NAMES[name_hash(run_id) % len(FIRST_NAMES)]
    last = LAST_NAMES[name_hash(session_id) % len(LAST_NAMES)]
    return f"{first}-{last}"


def hand_name_from_seed(seed: str) -> str:
    first = FIRST_NAMES[name_hash(seed) % len(FIRST_NAMES)]
    last = LAST_NAMES[name_hash2(seed) % len(LAST_NAMES)]
    return f"{first}-{last}"


def random_hand_name() -> str:
    """Name for an anonymous mate."""
    return hand_name_from_seed(f"{int(time.time() * 1000):x}-{secrets.token_hex(3)}")
