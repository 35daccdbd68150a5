"""
auth/tokens.py -- Password hashing, session token and expiry utilities.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The User Directory keeps
       a bcrypt hash for the redundant local check at sign-in. The previous
       scheme was a reversible encoding and is not reproduced. _DUMMY_HASH
       enables timing equalization when a directory record has no usable
       hash, so response time does not reveal which check failed.
       Passwords are pre-hashed with SHA-256 (base64) so bcrypt never sees
       more than 72 bytes, whatever the length or encoding of the input.

  Session tokens: secrets.token_urlsafe(32) gives 256 bits of entropy from
       the OS CSPRNG. Tokens are bearer secrets for the Session Record Store
       lookup; they are never logged.

  Expiry: a session is valid only while now < expires_at. A record expiring
       exactly "now" is already expired (exclusive upper bound).

Layer rule: no imports from cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt

SESSION_TOKEN_PREFIX = "ms_"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    """SHA-256 the password and base64 it: always 44 bytes, no NUL bytes.

    bcrypt rejects input over 72 bytes (bcrypt >= 5 raises ValueError), and a
    128-character password can be up to 512 UTF-8 bytes.
    """
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash (e.g. a legacy non-bcrypt value) never matches.
        return False


_DUMMY_HASH: str = hash_password("marquee_timing_dummy")


def verify_password_or_dummy(plain: str, hashed: str | None) -> bool:
    """Constant-cost password check.

    Always runs bcrypt, against _DUMMY_HASH when there is no stored hash, and
    returns False in that case.
    """
    if not hashed:
        verify_password(plain, _DUMMY_HASH)
        return False
    return verify_password(plain, hashed)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Generate a new session token in the format: ms_<43 url-safe chars>."""
    return f"{SESSION_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_expiry(now: datetime, ttl_days: int) -> datetime:
    """Return the expires_at for a session issued at now."""
    return now + timedelta(days=ttl_days)


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """True when expires_at is at or before now."""
    return expires_at <= now
