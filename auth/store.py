"""
auth/store.py -- SQLAlchemy Core persistence for the User Directory and the
Session Record Store.

Pattern: Repository + Data Mapper.
UserDirectory and SessionRecordStore are the repositories; _row_to_record /
_row_to_session are the mappers. The session manager never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  users.email is UNIQUE. The session manager still checks for an existing
  email before signup so it can return a friendly error without a provider
  round-trip, but the constraint is what actually prevents two concurrent
  signups from both creating a record. create() lets IntegrityError escape
  so the caller can map it to DuplicateUser.

  delete_for_user() matches on (id, user_id) so a caller can only revoke its
  own sessions even if it knows another session's id.

Timestamps:
  Stored as fixed-width UTC strings (YYYY-MM-DDTHH:MM:SS.ffffffZ). isoformat()
  drops the microseconds field when it is zero, which breaks lexicographic
  range comparisons on expires_at. The fixed format keeps "<" and ">" correct
  on every backend.

DB path: configured by Settings.database_url (default ~/.marquee/marquee_sessions.db).

Layer rule: no imports from cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine, make_url

from auth.models import DirectoryRecord, SessionRecord

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # stored lower-cased
    Column("full_name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),  # bcrypt
    Column("provider_user_id", String(64)),  # Credential Store identity id
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "session_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("session_token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    # Create the parent directory of a plain SQLite file path. In-memory and
    # file: URIs are left alone.
    database = url.database or ""
    if url.get_backend_name() == "sqlite" and database and database != ":memory:" and not database.startswith("file:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Store calls run in worker threads via asyncio.to_thread.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _now_db() -> str:
    return _to_db(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# User Directory
# ---------------------------------------------------------------------------


class UserDirectory:
    """Repository for application user records.

    Usage:
        directory = UserDirectory("sqlite:///users.db")
        record_id = directory.create(DirectoryRecord(email="a@x.com", full_name="A", password_hash=h))
        record = directory.get_by_email("a@x.com")
        directory.close()
    """

    # Columns update() accepts. Checked before any SQL write so a caller
    # cannot rewrite id or created_at through **fields.
    _UPDATABLE: set = {"full_name", "password_hash", "provider_user_id"}

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create(self, record: DirectoryRecord) -> int:
        """Insert a new user record and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_db()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(record.email),
                    full_name=record.full_name,
                    password_hash=record.password_hash,
                    provider_user_id=record.provider_user_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> DirectoryRecord | None:
        """Look up a record by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_by_id(self, record_id: int) -> DirectoryRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_records(self) -> list[DirectoryRecord]:
        """Return all records ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_record(r) for r in rows]

    def update(self, record_id: int, **fields) -> bool:
        """Update mutable fields and stamp updated_at.

        Accepted fields: full_name, password_hash, provider_user_id.
        Returns True if a row was updated, False if record_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == record_id).values(updated_at=_now_db(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, record_id: int) -> bool:
        """Permanently delete a record. Returns True if deleted, False if not found.

        Session records owned by the user are not touched here; the session
        manager deletes them first.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == record_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Session Record Store
# ---------------------------------------------------------------------------


class SessionRecordStore:
    """Repository for SessionRecord entries.

    Every method that answers "is this session usable" takes now explicitly so
    the expiry boundary is decided by the caller's clock, not the database's.
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create(self, record: SessionRecord) -> int:
        """Insert a new session record and return its ID.

        created_at defaults to the current time when the record has none.
        """
        created_at = record.created_at or datetime.now(timezone.utc)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=record.user_id,
                    session_token=record.session_token,
                    expires_at=_to_db(record.expires_at),
                    created_at=_to_db(created_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, record_id: int) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == record_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_token(self, token: str) -> SessionRecord | None:
        """Look up a record by token regardless of expiry. Used by sign-out."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_valid_by_token(self, token: str, now: datetime) -> SessionRecord | None:
        """Return the record for token only if expires_at > now. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.session_token == token) & (_sessions.c.expires_at > _to_db(now))
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active_for_user(self, user_id: int, now: datetime) -> list[SessionRecord]:
        """Return all unexpired records for a user (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires_at > _to_db(now)))
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_expired(self, now: datetime, user_id: int | None = None) -> list[SessionRecord]:
        """Return records with expires_at <= now, optionally for one user."""
        condition = _sessions.c.expires_at <= _to_db(now)
        if user_id is not None:
            condition = condition & (_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(_sessions.select().where(condition).order_by(_sessions.c.id)).fetchall()
        return [_row_to_session(r) for r in rows]

    def update_expiry(self, record_id: int, expires_at: datetime) -> bool:
        """Move a record's expiry. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.id == record_id).values(expires_at=_to_db(expires_at))
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, record_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == record_id))
            conn.commit()
        return result.rowcount > 0

    def delete_for_user(self, record_id: int, user_id: int) -> bool:
        """Delete a record only if it belongs to user_id.

        Both conditions must match, so knowing another user's session id is
        not enough to revoke it. Returns False if not found or wrong owner.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.id == record_id) & (_sessions.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: int) -> int:
        """Delete every record of a user. Returns the number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> DirectoryRecord:
    return DirectoryRecord(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        password_hash=row.password_hash,
        provider_user_id=row.provider_user_id,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        session_token=row.session_token,
        expires_at=_from_db(row.expires_at),
        created_at=_from_db(row.created_at),
    )
