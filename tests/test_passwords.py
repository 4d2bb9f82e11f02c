"""
tests/test_passwords.py -- Unit tests for auth/passwords.py.

Covers:
  - Hash/verify round trip and salting (two hashes of one password differ)
  - Wrong password and malformed hashes verify as False, never raise
  - The cost factor is embedded in the hash
  - The 72-byte bcrypt limit is measured in bytes, not characters
"""

from __future__ import annotations

from auth.passwords import MAX_PASSWORD_BYTES, burn_verification, exceeds_bcrypt_limit, hash_password, verify_password


def test_hash_verifies_and_rejects_wrong_password():
    hashed = hash_password("Passw0rd!", rounds=4)
    assert verify_password("Passw0rd!", hashed)
    assert not verify_password("passw0rd!", hashed)


def test_hashes_are_salted():
    assert hash_password("same", rounds=4) != hash_password("same", rounds=4)


def test_cost_factor_is_recorded_in_hash():
    assert hash_password("x", rounds=5).startswith("$2b$05$")


def test_malformed_hash_is_a_mismatch():
    assert verify_password("anything", "not-a-bcrypt-hash") is False
    assert verify_password("anything", "") is False


def test_burn_verification_returns_nothing():
    assert burn_verification("whatever") is None


def test_byte_limit_counts_utf8_bytes():
    assert not exceeds_bcrypt_limit("a" * MAX_PASSWORD_BYTES)
    assert exceeds_bcrypt_limit("a" * (MAX_PASSWORD_BYTES + 1))
    # 36 two-byte characters == 72 bytes; one more tips it over.
    assert not exceeds_bcrypt_limit("é" * 36)
    assert exceeds_bcrypt_limit("é" * 37)
