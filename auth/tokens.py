"""
auth/tokens.py -- Device bearer token generation, hashing, and validation.

Security design decisions:
  Generation: secrets.token_hex(n) gives n random bytes as 2n lowercase hex
       characters. The default 32 bytes = 64 chars = 256 bits of entropy, so
       brute-force is computationally infeasible.

  Storage: only SHA-256(token) is persisted. A salted slow hash (bcrypt) is
       unnecessary for 256-bit random secrets, and a deterministic digest
       makes lookup by hash an indexed equality query.

  Validation: the candidate is checked for length and charset before any
       hashing, then the digests are compared with hmac.compare_digest so
       timing does not reveal how many leading characters matched.

  Logging: the plaintext token is returned exactly once and never logged.
       Log lines carry at most an 8-character digest prefix (fingerprint()).

Token policy (length, lifetime) comes from the Settings instance passed to
TokenService, never from process-wide state.

Layer rule: no imports from api/, devices/, commands/, or audit/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from core.config import Settings

logger = logging.getLogger("mdm.tokens")

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class TokenService:
    """Issue and verify device bearer tokens under one token policy."""

    def __init__(self, settings: Settings) -> None:
        self.token_length = settings.token_length
        self.expiration_days = settings.token_expiration_days

    def generate(self) -> str:
        """Return a fresh random token of token_length lowercase hex characters."""
        return secrets.token_hex(self.token_length // 2)

    @staticmethod
    def hash(token: str) -> str:
        """Return the SHA-256 hex digest of token. Empty input is a programming error."""
        if not token:
            raise ValueError("Cannot hash an empty token")
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def is_valid_format(self, token: Optional[str]) -> bool:
        return bool(token) and len(token) == self.token_length and bool(_HEX_RE.match(token))

    def validate(self, candidate: Optional[str], stored_digest: Optional[str]) -> bool:
        """Return True iff candidate is well-formed and hashes to stored_digest."""
        if not stored_digest or not self.is_valid_format(candidate):
            return False
        return hmac.compare_digest(self.hash(candidate), stored_digest)

    def expiry_from(self, now: datetime) -> datetime:
        """Absolute expiry for a token issued at now. There is no sliding renewal."""
        return now + timedelta(days=self.expiration_days)

    @staticmethod
    def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
        """A missing expiry counts as expired."""
        if expires_at is None:
            return True
        return now >= expires_at


def fingerprint(digest: Optional[str]) -> str:
    """Short, non-reversible label for a token digest, safe to log."""
    return (digest or "")[:8] or "-"
