"""
tests/test_secret_tokens.py -- Unit tests for auth/secret_tokens.py.

Covers:
  - Token length and alphabet (64 hex chars for the default 32 bytes)
  - Uniqueness across many draws
  - Invalid byte lengths rejected
  - Expiry helpers fail closed on a missing expiry
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from auth.secret_tokens import as_utc, expiry_from_now, expiry_in_seconds, generate_token, is_expired, utcnow


def test_default_token_is_64_hex_chars():
    token = generate_token()
    assert re.fullmatch(r"[0-9a-f]{64}", token)


def test_custom_byte_length():
    assert len(generate_token(8)) == 16


def test_tokens_do_not_repeat():
    assert len({generate_token() for _ in range(500)}) == 500


@pytest.mark.parametrize("length", [0, -1])
def test_non_positive_length_rejected(length):
    with pytest.raises(ValueError):
        generate_token(length)


def test_missing_expiry_counts_as_expired():
    assert is_expired(None) is True


def test_future_and_past_expiry():
    assert is_expired(expiry_from_now(1)) is False
    assert is_expired(expiry_in_seconds(-1)) is True


def test_naive_datetimes_are_treated_as_utc():
    naive_future = (utcnow() + timedelta(minutes=5)).replace(tzinfo=None)
    assert is_expired(naive_future) is False
    assert as_utc(naive_future).tzinfo is timezone.utc


def test_aware_datetime_passes_through_unchanged():
    value = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert as_utc(value) is value
