"""
tests/conftest.py -- Shared fixtures for the session core tests.

This module provides:
  - FakeCredentialStore: in-memory stand-in for the remote identity provider,
    with the same method signatures and ProviderError statuses as
    auth.provider.CredentialStore
  - FrozenClock: controllable "now" for expiry boundaries
  - settings / directory / sessions / cache / provider / clock / manager fixtures

Design: each test gets its own SQLite file under tmp_path. SessionManager runs
store calls in worker threads (asyncio.to_thread), so a plain ':memory:' DB
would present a blank schema to each thread. A file DB in WAL mode is shared
by every connection and disappears with tmp_path.

The DEBUG env var must be set before any core import so get_settings() does
not refuse to start without a production provider configuration.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() accepts a
# local http endpoint and a missing project id.
os.environ.setdefault("DEBUG", "true")

import bcrypt
import pytest

from auth.errors import ProviderError, RemoteUnavailable
from auth.manager import SessionManager
from auth.models import Identity, ProviderSession
from auth.store import SessionRecordStore, UserDirectory
from cache.store import LocalCache
from core.config import Settings

_REAL_GENSALT = bcrypt.gensalt

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeCredentialStore:
    """In-memory identity provider.

    Accounts are keyed by lower-cased email. One "current" provider-session
    exists at a time, as for a single device. Set unavailable=True to make
    every call fail like a network outage.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, dict] = {}
        self.current: ProviderSession | None = None
        self.current_email: str | None = None
        self.unavailable = False
        self.calls: list[str] = []
        self._next_id = 1

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.unavailable:
            raise RemoteUnavailable()

    def _require_session(self) -> dict:
        if self.current is None or self.current_email not in self.accounts:
            raise ProviderError(401, "User (role: guests) missing scope (account)", "general_unauthorized_scope")
        return self.accounts[self.current_email]

    def add_account(self, email: str, password: str, name: str) -> Identity:
        now = datetime.now(timezone.utc)
        account = {
            "id": f"prov{self._next_id}",
            "email": email.lower(),
            "password": password,
            "name": name,
            "created_at": now,
            "updated_at": now,
        }
        self._next_id += 1
        self.accounts[email.lower()] = account
        return _identity(account)

    def create_account(self, email: str, password: str, name: str) -> Identity:
        self._enter("create_account")
        if email.lower() in self.accounts:
            raise ProviderError(409, "A user with the same id, email, or phone already exists", "user_already_exists")
        return self.add_account(email, password, name)

    def create_session(self, email: str, password: str) -> ProviderSession:
        self._enter("create_session")
        account = self.accounts.get(email.lower())
        if account is None or account["password"] != password:
            raise ProviderError(401, "Invalid credentials. Please check the email and password.", "user_invalid_credentials")
        now = datetime.now(timezone.utc)
        self.current = ProviderSession(
            id=f"sess{self._next_id}",
            user_id=account["id"],
            expires_at=now + timedelta(days=365),
            created_at=now,
        )
        self._next_id += 1
        self.current_email = account["email"]
        return self.current

    def get_session(self, session_id: str = "current") -> ProviderSession:
        self._enter("get_session")
        self._require_session()
        return self.current

    def get_current_identity(self) -> Identity:
        self._enter("get_current_identity")
        return _identity(self._require_session())

    def delete_session(self, session_id: str = "current") -> None:
        self._enter("delete_session")
        self._require_session()
        self.current = None
        self.current_email = None

    def update_password(self, new_password: str, old_password: str) -> Identity:
        self._enter("update_password")
        account = self._require_session()
        if account["password"] != old_password:
            raise ProviderError(401, "Invalid credentials. Please check the email and password.", "user_invalid_credentials")
        account["password"] = new_password
        account["updated_at"] = datetime.now(timezone.utc)
        return _identity(account)

    def close(self) -> None:
        pass


def _identity(account: dict) -> Identity:
    return Identity(
        id=account["id"],
        email=account["email"],
        name=account["name"],
        created_at=account["created_at"],
        updated_at=account["updated_at"],
    )


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    """Use the minimum bcrypt cost in tests. Hashes stay valid bcrypt hashes."""
    monkeypatch.setattr(bcrypt, "gensalt", lambda rounds=4, prefix=b"2b": _REAL_GENSALT(rounds=4, prefix=prefix))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        provider_endpoint="http://localhost/v1",
        provider_project_id="test-project",
        session_ttl_days=30,
        session_validation_interval=300,
        remote_timeout_seconds=5,
        min_password_length=6,
    )


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'sessions.db'}"


@pytest.fixture
def directory(db_url: str) -> Generator[UserDirectory, None, None]:
    store = UserDirectory(db_url)
    yield store
    store.close()


@pytest.fixture
def sessions(db_url: str) -> Generator[SessionRecordStore, None, None]:
    store = SessionRecordStore(db_url)
    yield store
    store.close()


@pytest.fixture
def cache(tmp_path) -> Generator[LocalCache, None, None]:
    local = LocalCache(tmp_path / "cache.db")
    yield local
    local.close()


@pytest.fixture
def provider() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def manager(provider, directory, sessions, cache, settings, clock) -> SessionManager:
    """SessionManager wired to the fake provider and per-test stores.

    Not closed here: directory/sessions/cache fixtures own their teardown.
    """
    return SessionManager(
        credentials=provider,
        directory=directory,
        sessions=sessions,
        cache=cache,
        settings=settings,
        clock=clock,
    )
