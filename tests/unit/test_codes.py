"""
Unit tests for codes module.
Tests: generate_invite_code, normalize_invite_code, generate_event_code, match_id
"""
import random
import re

from eventhub.codes import (
    INVITE_CODE_ALPHABET,
    INVITE_CODE_LENGTH,
    generate_event_code,
    generate_invite_code,
    match_id,
    normalize_invite_code,
)


class TestGenerateInviteCode:
    """Tests for generate_invite_code function."""

    def test_length_and_alphabet(self):
        for _ in range(50):
            code = generate_invite_code()
            assert len(code) == INVITE_CODE_LENGTH
            assert set(code) <= set(INVITE_CODE_ALPHABET)

    def test_seeded_rng_is_reproducible(self):
        assert generate_invite_code(random.Random(3)) == generate_invite_code(random.Random(3))

    def test_codes_vary(self):
        rng = random.Random(1)
        codes = {generate_invite_code(rng) for _ in range(100)}
        assert len(codes) > 90


class TestNormalizeInviteCode:
    """Tests for normalize_invite_code function."""

    def test_uppercases_and_strips(self):
        assert normalize_invite_code('  k7q2zd ') == 'K7Q2ZD'

    def test_none(self):
        assert normalize_invite_code(None) == ''


class TestEventCode:
    """Tests for generate_event_code and match_id."""

    def test_event_code_format(self):
        for _ in range(20):
            assert re.fullmatch(r'EV-[0-9A-F]{6}', generate_event_code())

    def test_match_id(self):
        assert match_id(2, 3) == 'r2_m3'
