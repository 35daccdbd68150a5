"""Tests for auth/tokens.py -- hashing, session tokens, expiry."""

from datetime import datetime, timedelta, timezone

from auth.tokens import (
    SESSION_TOKEN_PREFIX,
    generate_session_token,
    hash_password,
    is_expired,
    session_expiry,
    verify_password,
    verify_password_or_dummy,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("secret1")
        assert hashed != "secret1"
        assert verify_password("secret1", hashed) is True
        assert verify_password("secret2", hashed) is False

    def test_hashes_are_salted(self):
        assert hash_password("secret1") != hash_password("secret1")

    def test_passwords_past_72_bytes(self):
        long_password = "p" * 100
        hashed = hash_password(long_password)
        assert verify_password(long_password, hashed) is True
        # Differs only after byte 72: must not collide.
        assert verify_password("p" * 99 + "q", hashed) is False

    def test_multibyte_password(self):
        password = "é" * 60  # 120 UTF-8 bytes
        assert verify_password(password, hash_password(password)) is True

    def test_malformed_hash_never_matches(self):
        # Base64 of the password, as stored by older builds.
        assert verify_password("secret1", "c2VjcmV0MQ==") is False

    def test_dummy_path_always_fails(self):
        assert verify_password_or_dummy("secret1", None) is False
        assert verify_password_or_dummy("secret1", "") is False

    def test_dummy_path_with_real_hash(self):
        assert verify_password_or_dummy("secret1", hash_password("secret1")) is True


class TestSessionTokens:
    def test_prefix_and_length(self):
        token = generate_session_token()
        assert token.startswith(SESSION_TOKEN_PREFIX)
        assert len(token) == len(SESSION_TOKEN_PREFIX) + 43

    def test_unique(self):
        assert len({generate_session_token() for _ in range(100)}) == 100


class TestExpiry:
    def test_thirty_days(self):
        assert session_expiry(NOW, 30) == datetime(2026, 3, 31, 12, 0, 0, tzinfo=timezone.utc)

    def test_boundary_is_expired(self):
        assert is_expired(NOW, NOW) is True

    def test_just_after_now_is_valid(self):
        assert is_expired(NOW + timedelta(microseconds=1), NOW) is False

    def test_past_is_expired(self):
        assert is_expired(NOW - timedelta(days=1), NOW) is True
