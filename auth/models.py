"""
auth/models.py -- Domain dataclasses for session entities.

Pattern: Data class (pure data container, zero logic). Stores, the provider
client and the session manager do the work; these only own the shape.

Timestamps are timezone-aware UTC datetimes in memory. Serialization to the
database and the local cache happens at those boundaries, not here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """Application user as shown to the UI layer.

    Mirrors the User Directory record minus anything secret. This is the
    object cached locally after login and handed to SessionContext.
    """

    email: str
    full_name: str
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class DirectoryRecord:
    """A User Directory row.

    password_hash is bcrypt and only used for the redundant local check at
    sign-in. provider_user_id links the row to the Credential Store identity
    created at signup. Neither field ever leaves the session manager.
    """

    email: str
    full_name: str
    password_hash: str
    provider_user_id: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_user(self) -> User:
        return User(
            id=self.id,
            email=self.email,
            full_name=self.full_name,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class Identity:
    """Credential Store account as returned by the identity provider."""

    id: str
    email: str
    name: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ProviderSession:
    """Provider-native session issued after password verification.

    Opaque to the rest of the app: only used to tell whether the provider
    still considers the device logged in.
    """

    id: str
    user_id: str
    expires_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class SessionRecord:
    """Application-level session ledger entry, one per successful login.

    Lets the app list and revoke sessions, which the provider does not expose
    to clients. A record is valid only while expires_at is strictly in the
    future.
    """

    user_id: int
    session_token: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class LocalCacheEntry:
    """Device-persisted authentication snapshot (four keys in LocalCache)."""

    user: User
    session_token: str
    session_expires_at: datetime | None = None  # absent on entries written before expiry tracking
    is_authenticated: bool = True


@dataclass
class AuthResult:
    """Return shape of every result-style SessionManager operation.

    code carries the error taxonomy name (e.g. "InvalidCredentials") so
    callers can branch without parsing the human-readable error string.
    """

    success: bool
    user: User | None = None
    session: SessionRecord | None = None
    error: str | None = None
    code: str | None = None
