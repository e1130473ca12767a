"""Tests for deterministic hand names."""

from __future__ import annotations

import re

from tiller.mate.names import (
    FIRST_NAMES,
    LAST_NAMES,
    hand_name,
    hand_name_from_seed,
    name_hash,
    name_hash2,
    random_hand_name,
)
from tiller.mate.types import validate_mate_name


class TestHashes:
    def test_fnv1a_reference_values(self):
        assert name_hash("") == 2166136261
        assert name_hash("a") == 0xE40C292C

    def test_shift_add_reference_values(self):
        assert name_hash2("") == 0
        assert name_hash2("a") == 97

    def test_hashes_fit_32_bits(self):
        for text in ("phase-02", "x" * 500, "näme"):
            assert 0 <= name_hash(text) <= 0xFFFFFFFF
            assert 0 <= name_hash2(text) <= 0xFFFFFFFF


class TestHandNames:
    def test_pools(self):
        assert len(FIRST_NAMES) == 32
        assert len(LAST_NAMES) == 32
        assert len(set(FIRST_NAMES)) == 32
        assert len(set(LAST_NAMES)) == 32

    def test_deterministic(self):
        assert hand_name("phase-02", "session-abc") == hand_name("phase-02", "session-abc")
        assert hand_name_from_seed("seed") == hand_name_from_seed("seed")

    def test_first_name_follows_run(self):
        one = hand_name("phase-02", "session-abc123")
        two = hand_name("phase-02", "session-xyz789")

        assert one.split("-")[0] == two.split("-")[0]

    def test_parts_come_from_pools(self):
        first, last = hand_name_from_seed("anything").split("-")

        assert first in FIRST_NAMES
        assert last in LAST_NAMES

    def test_names_are_valid_mate_names(self):
        for seed in ("a", "b", "phase-07", "session-123"):
            validate_mate_name(hand_name_from_seed(seed))

    def test_random_name_format(self):
        name = random_hand_name()

        assert re.match(r"^[a-z]+-[a-z]+$", name)
        first, last = name.split("-")
        assert first in FIRST_NAMES
        assert last in LAST_NAMES
