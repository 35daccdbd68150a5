"""
cache/store.py -- Device-local key-value cache for the authenticated session.

Holds the four keys that together say "this device is logged in":

    user_data            JSON-serialized User
    session_token        opaque SessionRecord token
    session_expires_at   ISO 8601 UTC expiry of that record
    is_authenticated     "true" / "false"

This cache is the sole local source of truth for UI gating. Multi-key writes
and clears run inside one sqlite transaction, so a concurrent reader sees
either the old entry or the new one, never a mix of the two.

Usage:
    cache = LocalCache()
    cache.write_entry(entry)        # after a successful login
    entry = cache.read_entry()      # LocalCacheEntry or None
    cache.clear()                   # logout / failed validation
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from auth.models import LocalCacheEntry, User

logger = logging.getLogger("marquee.cache")

_DEFAULT_DB = Path.home() / ".marquee" / "marquee_cache.db"

KEY_USER = "user_data"
KEY_SESSION_TOKEN = "session_token"
KEY_SESSION_EXPIRES_AT = "session_expires_at"
KEY_IS_AUTHENTICATED = "is_authenticated"

ALL_KEYS = (KEY_USER, KEY_SESSION_TOKEN, KEY_SESSION_EXPIRES_AT, KEY_IS_AUTHENTICATED)

_DDL = """
CREATE TABLE IF NOT EXISTS local_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL
);
"""


class LocalCache:
    def __init__(self, db_path: Path = _DEFAULT_DB) -> None:
        db_path = Path(db_path)
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Raw key access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM local_cache WHERE key = ?", (key,)).fetchone()
        return row[0] if row is not None else None

    def set_many(self, values: dict[str, str]) -> None:
        """Write several keys in one transaction (all or nothing)."""
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO local_cache (key, value) VALUES (?, ?)",
                list(values.items()),
            )

    def remove_many(self, keys: Iterable[str]) -> None:
        """Remove several keys in one transaction."""
        with self._conn:
            self._conn.executemany("DELETE FROM local_cache WHERE key = ?", [(k,) for k in keys])

    # ------------------------------------------------------------------
    # Entry-level access
    # ------------------------------------------------------------------

    def read_entry(self) -> Optional[LocalCacheEntry]:
        """Return the cached entry, or None unless user, token and flag are all present.

        All four keys are read in one statement so a concurrent write cannot
        interleave between them. A partial or unreadable entry is cleared,
        so the cache holds either a whole entry or nothing.
        """
        rows = self._conn.execute(
            f"SELECT key, value FROM local_cache WHERE key IN ({', '.join('?' for _ in ALL_KEYS)})",  # noqa: S608
            ALL_KEYS,
        ).fetchall()
        values = dict(rows)
        user = _decode_user(values.get(KEY_USER))
        token = values.get(KEY_SESSION_TOKEN)
        if user is None or not token or KEY_IS_AUTHENTICATED not in values:
            if values:
                logger.warning("Clearing incomplete session cache entry (keys: %s)", sorted(values))
                self.clear()
            return None
        return LocalCacheEntry(
            user=user,
            session_token=token,
            session_expires_at=_parse_ts(values.get(KEY_SESSION_EXPIRES_AT)),
            is_authenticated=values[KEY_IS_AUTHENTICATED] == "true",
        )

    def write_entry(self, entry: LocalCacheEntry) -> None:
        values = {
            KEY_USER: _encode_user(entry.user),
            KEY_SESSION_TOKEN: entry.session_token,
            KEY_IS_AUTHENTICATED: "true" if entry.is_authenticated else "false",
        }
        if entry.session_expires_at is not None:
            values[KEY_SESSION_EXPIRES_AT] = entry.session_expires_at.isoformat()
        with self._conn:
            # Drop a stale expiry from a previous entry in the same transaction.
            if entry.session_expires_at is None:
                self._conn.execute("DELETE FROM local_cache WHERE key = ?", (KEY_SESSION_EXPIRES_AT,))
            self._conn.executemany(
                "INSERT OR REPLACE INTO local_cache (key, value) VALUES (?, ?)",
                list(values.items()),
            )

    def read_user(self) -> Optional[User]:
        return _decode_user(self.get(KEY_USER))

    def update_user(self, user: User) -> None:
        """Overwrite only the user_data key (refresh does not rotate the token)."""
        self.set_many({KEY_USER: _encode_user(user)})

    def clear(self) -> None:
        """Remove all four keys. Safe to call on an already-empty cache."""
        self.remove_many(ALL_KEYS)

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _encode_user(user: User) -> str:
    return json.dumps(
        {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "created_at": user.created_at.isoformat() if user.created_at else None,
            "updated_at": user.updated_at.isoformat() if user.updated_at else None,
        }
    )


def _decode_user(raw: Optional[str]) -> Optional[User]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return User(
            id=data.get("id"),
            email=data["email"],
            full_name=data["full_name"],
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Discarding unreadable cached user: %s", e)
        return None


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Discarding unreadable cached timestamp %r", raw)
        return None
