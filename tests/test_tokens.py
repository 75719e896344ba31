"""Unit tests for auth/tokens.py -- device bearer token policy.

Covers:
- generate() yields 64 lowercase hex chars and never repeats
- hash() is deterministic SHA-256 hex and rejects empty input
- validate() rejects None, wrong length, non-hex and wrong digest
- expiry_from() / is_expired() use an absolute lifetime
- Settings rejects token lengths below 64 or odd
"""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from auth.tokens import TokenService, fingerprint
from core.config import Settings


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(Settings())


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestGenerate:
    def test_length_and_charset(self, tokens):
        token = tokens.generate()
        assert len(token) == 64
        assert all(c in "0123456789abcdef" for c in token)

    def test_tokens_are_unique(self, tokens):
        assert len({tokens.generate() for _ in range(200)}) == 200

    def test_custom_length(self):
        svc = TokenService(Settings(token_length=96))
        assert len(svc.generate()) == 96
        assert svc.is_valid_format(svc.generate())


class TestHash:
    def test_sha256_hex(self, tokens):
        token = tokens.generate()
        assert tokens.hash(token) == hashlib.sha256(token.encode()).hexdigest()
        assert tokens.hash(token) == tokens.hash(token)

    def test_empty_token_raises(self, tokens):
        with pytest.raises(ValueError):
            tokens.hash("")


class TestValidate:
    def test_matching_token(self, tokens):
        token = tokens.generate()
        assert tokens.validate(token, tokens.hash(token)) is True

    def test_wrong_token(self, tokens):
        assert tokens.validate(tokens.generate(), tokens.hash(tokens.generate())) is False

    @pytest.mark.parametrize(
        "candidate",
        [None, "", "abc", "g" * 64, "A" * 64, "a" * 63, "a" * 65],
    )
    def test_malformed_candidates_rejected(self, tokens, candidate):
        assert tokens.is_valid_format(candidate) is False
        assert tokens.validate(candidate, "0" * 64) is False

    def test_missing_digest(self, tokens):
        assert tokens.validate(tokens.generate(), None) is False


class TestExpiry:
    def test_default_lifetime_is_365_days(self, tokens):
        assert tokens.expiry_from(NOW) == NOW + timedelta(days=365)

    def test_is_expired(self, tokens):
        expiry = tokens.expiry_from(NOW)
        assert tokens.is_expired(expiry, NOW) is False
        assert tokens.is_expired(expiry, expiry - timedelta(seconds=1)) is False
        assert tokens.is_expired(expiry, expiry) is True
        assert tokens.is_expired(expiry, expiry + timedelta(days=1)) is True

    def test_missing_expiry_counts_as_expired(self, tokens):
        assert tokens.is_expired(None, NOW) is True


class TestPolicy:
    @pytest.mark.parametrize("length", [32, 63, 65])
    def test_weak_lengths_rejected(self, length):
        with pytest.raises(ValidationError):
            Settings(token_length=length)

    def test_zero_expiration_rejected(self):
        with pytest.raises(ValidationError):
            Settings(token_expiration_days=0)


def test_fingerprint_is_short_prefix():
    assert fingerprint("abcdef0123456789") == "abcdef01"
    assert fingerprint(None) == "-"
