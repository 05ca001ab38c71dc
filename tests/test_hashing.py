"""Tests for pseudonymous identifiers and IP anonymization."""

from datetime import date

import pytest

from src.identity.hashing import (
    anonymize_ip,
    generate_session_id,
    generate_visitor_id,
    hash_value,
)

SECRET = "test-secret"
UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0"


class TestVisitorId:
    def test_stable_across_calls(self):
        assert generate_visitor_id("198.51.100.7", UA, SECRET) == generate_visitor_id(
            "198.51.100.7", UA, SECRET
        )

    def test_changes_with_ip_or_user_agent(self):
        base = generate_visitor_id("198.51.100.7", UA, SECRET)
        assert generate_visitor_id("198.51.100.8", UA, SECRET) != base
        assert generate_visitor_id("198.51.100.7", UA + " extra", SECRET) != base

    def test_depends_on_secret(self):
        assert generate_visitor_id("198.51.100.7", UA, "a") != generate_visitor_id(
            "198.51.100.7", UA, "b"
        )

    def test_is_sha256_hex_and_hides_inputs(self):
        visitor_id = generate_visitor_id("198.51.100.7", UA, SECRET)
        assert len(visitor_id) == 64
        int(visitor_id, 16)
        assert "198.51.100.7" not in visitor_id
        assert SECRET not in visitor_id

    def test_missing_inputs_are_deterministic_not_empty(self):
        first = generate_visitor_id(None, None, SECRET)
        assert first
        assert first == generate_visitor_id("", "", SECRET)
        assert first == generate_visitor_id("unknown", "unknown", SECRET)


class TestSessionId:
    def test_stable_within_a_day(self):
        day = date(2024, 3, 1)
        assert generate_session_id("198.51.100.7", UA, SECRET, day) == generate_session_id(
            "198.51.100.7", UA, SECRET, day
        )

    def test_rotates_across_days(self):
        first = generate_session_id("198.51.100.7", UA, SECRET, date(2024, 3, 1))
        second = generate_session_id("198.51.100.7", UA, SECRET, date(2024, 3, 2))
        assert first != second

    def test_differs_from_visitor_id(self):
        assert generate_session_id("198.51.100.7", UA, SECRET, date(2024, 3, 1)) != (
            generate_visitor_id("198.51.100.7", UA, SECRET)
        )

    def test_visitor_id_survives_day_change(self):
        # visitor ID takes no date, so only the session rotates
        assert generate_visitor_id("198.51.100.7", UA, SECRET) == generate_visitor_id(
            "198.51.100.7", UA, SECRET
        )

    def test_defaults_to_today(self):
        assert generate_session_id("198.51.100.7", UA, SECRET)


class TestHashValue:
    def test_keyed(self):
        assert hash_value("x", "k1") != hash_value("x", "k2")


class TestAnonymizeIp:
    @pytest.mark.parametrize(
        "ip, expected",
        [
            ("203.0.113.42", "203.0.113.0"),
            ("10.1.2.3", "10.1.2.0"),
            ("::ffff:203.0.113.42", "203.0.113.0"),
            ("2001:db8:85a3:8d3:1319:8a2e:370:7348", "2001:db8:85a3:8d3::"),
            ("2001:db8::1", "2001:db8:0:0::"),
            ("", "unknown"),
            (None, "unknown"),
            ("not-an-ip", "unknown"),
        ],
    )
    def test_anonymize(self, ip, expected):
        assert anonymize_ip(ip) == expected
