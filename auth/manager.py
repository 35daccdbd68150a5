"""
auth/manager.py -- SessionManager: the session lifecycle core.

Orchestrates sign-up, sign-in, validation, refresh, enumeration, revocation,
cleanup and sign-out across four collaborators:

  credentials  CredentialStore      remote identity provider (password check,
                                    provider-session)
  directory    UserDirectory        application user records
  sessions     SessionRecordStore   application session ledger
  cache        LocalCache           device-local "who is logged in"

Two session concepts are tracked independently and reconciled by one rule:
local auth is valid iff the SessionRecord is valid AND the provider-session
is valid. is_authenticated() checks the SessionRecord side only (it is the
frequent, cheap gate every protected screen calls). refresh_auth() checks
both.

Boundary contract:
  No exception crosses a public method. Expected failures are AuthError
  subclasses converted to AuthResult(success=False, error, code), or
  False / None / [] for query-style operations. Unexpected exceptions are
  logged with traceback and converted to the same shapes. sign_out() always
  clears the local cache, whatever the remote calls do.

Concurrency:
  Blocking store and provider calls run via asyncio.to_thread under an
  explicit timeout (remote_timeout_seconds). Local cache writes are serialized
  by one asyncio.Lock. A validation failure only clears the cache if it still
  holds the token that failed, so a slow heartbeat cannot wipe a login that
  completed while it was in flight.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AuthError,
    DuplicateUser,
    InvalidCredentials,
    InvalidInput,
    ProviderError,
    RemoteUnavailable,
    SessionExpired,
    SessionInvalid,
    Unauthenticated,
    UserNotFound,
)
from auth.models import AuthResult, DirectoryRecord, LocalCacheEntry, SessionRecord, User
from auth.provider import CURRENT_SESSION, CredentialStore
from auth.schemas import PasswordChange, SignInRequest, SignUpRequest, first_error
from auth.store import SessionRecordStore, UserDirectory
from auth.tokens import (
    generate_session_token,
    hash_password,
    is_expired,
    session_expiry,
    utc_now,
    verify_password_or_dummy,
)
from cache.store import KEY_SESSION_TOKEN, LocalCache
from core.config import Settings, get_settings

logger = logging.getLogger("marquee.auth")


def _translate(exc: ProviderError, unauthorized: type[AuthError]) -> AuthError:
    """Map a provider HTTP status to the error taxonomy.

    unauthorized decides what a 401 means for this call: a wrong password at
    sign-in, a dead provider-session at refresh.
    """
    if exc.status == 401:
        return unauthorized()
    if exc.status == 409:
        return DuplicateUser()
    if exc.status == 404:
        return UserNotFound()
    if exc.status == 400:
        return InvalidInput(exc.message or None)
    if exc.status == 429:
        return RemoteUnavailable("Too many attempts. Wait a moment and try again.")
    return RemoteUnavailable()


class SessionManager:
    """Session lifecycle operations for one device.

    Usage:
        manager = SessionManager.from_settings()
        result = await manager.sign_in("jane@x.com", "secret1")
        if await manager.is_authenticated():
            ...
        await manager.sign_out()
        manager.close()
    """

    def __init__(
        self,
        credentials: CredentialStore,
        directory: UserDirectory,
        sessions: SessionRecordStore,
        cache: LocalCache,
        settings: Settings | None = None,
        clock: Callable | None = None,
    ) -> None:
        self.credentials = credentials
        self.directory = directory
        self.sessions = sessions
        self.cache = cache
        self.settings = settings or get_settings()
        self._clock = clock or utc_now
        self._cache_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SessionManager:
        """Build a manager with the real provider client and stores."""
        settings = settings or get_settings()
        return cls(
            credentials=CredentialStore(
                settings.provider_endpoint,
                settings.provider_project_id,
                timeout=settings.remote_timeout_seconds,
            ),
            directory=UserDirectory(settings.database_url),
            sessions=SessionRecordStore(settings.database_url),
            cache=LocalCache(Path(settings.local_cache_path)),
            settings=settings,
        )

    def close(self) -> None:
        self.credentials.close()
        self.directory.close()
        self.sessions.close()
        self.cache.close()

    # ------------------------------------------------------------------
    # Sign-up / sign-in
    # ------------------------------------------------------------------

    async def sign_up(self, full_name: str, email: str, password: str) -> AuthResult:
        """Create a provider account and its User Directory record.

        Does not sign the user in. The email pre-check gives a fast, friendly
        error; the UNIQUE constraint on users.email catches the race where two
        signups pass the pre-check together.
        """
        try:
            req = self._validate(SignUpRequest, full_name=full_name, email=email, password=password)
            self._check_password_length(req.password)

            if await self._remote(self.directory.get_by_email, req.email) is not None:
                raise DuplicateUser()

            # Hash before the provider call: a failure after create_account
            # would leave a provider account with no directory record.
            password_hash = await asyncio.to_thread(hash_password, req.password)

            try:
                identity = await self._remote(self.credentials.create_account, req.email, req.password, req.full_name)
            except ProviderError as e:
                raise _translate(e, InvalidCredentials) from e

            record = DirectoryRecord(
                email=req.email,
                full_name=req.full_name,
                password_hash=password_hash,
                provider_user_id=identity.id,
            )
            try:
                record_id = await self._remote(self.directory.create, record)
            except IntegrityError as e:
                # The provider account now exists without a directory record.
                # The client API cannot delete provider accounts, so log it.
                logger.warning("Concurrent signup detected; provider identity %s has no directory record", identity.id)
                raise DuplicateUser() from e

            created = await self._remote(self.directory.get_by_id, record_id)
            if created is None:
                raise UserNotFound("User record missing after signup.")
            logger.info("Signed up user id=%s", created.id)
            return AuthResult(success=True, user=created.to_user())
        except AuthError as e:
            return self._failure("Signup", e)
        except Exception:
            logger.exception("Unexpected signup error")
            return AuthResult(success=False, error="An error occurred during signup.", code=RemoteUnavailable.__name__)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Verify credentials, open a SessionRecord and populate the local cache.

        Steps: drop any stale provider-session; create a provider-session
        (the real password check); resolve the directory record and re-check
        the bcrypt hash; persist a new SessionRecord; write the cache entry in
        one transaction; purge this user's expired records. Nothing is cached
        unless every step up to the cache write succeeds.
        """
        provider_session = None
        record: SessionRecord | None = None
        pending_insert: asyncio.Task | None = None
        try:
            req = self._validate(SignInRequest, email=email, password=password)

            await self._delete_provider_session()

            try:
                provider_session = await self._remote(self.credentials.create_session, req.email, req.password)
                identity = await self._remote(self.credentials.get_current_identity)
            except ProviderError as e:
                raise _translate(e, InvalidCredentials) from e

            directory_record = await self._remote(self.directory.get_by_email, identity.email or req.email)
            if directory_record is None:
                raise UserNotFound()
            matches = await asyncio.to_thread(verify_password_or_dummy, req.password, directory_record.password_hash)
            if not matches:
                raise InvalidCredentials()
            user = directory_record.to_user()

            now = self._clock()
            record = SessionRecord(
                user_id=user.id,
                session_token=generate_session_token(),
                expires_at=session_expiry(now, self.settings.session_ttl_days),
                created_at=now,
            )
            # Kept as a task so a rollback can wait for an insert that
            # outlived the timeout; the worker thread still commits.
            pending_insert = asyncio.ensure_future(asyncio.to_thread(self.sessions.create, record))
            record.id = await self._bounded(asyncio.shield(pending_insert), self.sessions.create)

            async with self._cache_lock:
                self.cache.write_entry(
                    LocalCacheEntry(
                        user=user,
                        session_token=record.session_token,
                        session_expires_at=record.expires_at,
                        is_authenticated=True,
                    )
                )
        except Exception as e:
            await self._undo_sign_in(provider_session, record, pending_insert)
            if isinstance(e, AuthError):
                return self._failure("Login", e)
            logger.exception("Unexpected login error")
            return AuthResult(success=False, error="An error occurred during login.", code=RemoteUnavailable.__name__)

        await self.cleanup_expired_sessions(user.id)
        logger.info("User id=%s signed in (session id=%s)", user.id, record.id)
        return AuthResult(success=True, user=user, session=record)

    async def _undo_sign_in(
        self,
        provider_session,
        record: SessionRecord | None,
        pending_insert: asyncio.Task | None = None,
    ) -> None:
        if record is not None and record.id is None and pending_insert is not None:
            # The insert timed out but its thread may still commit. Wait for
            # the outcome, then fall back to a lookup by token.
            try:
                record.id = await pending_insert
            except Exception as e:
                logger.info("Session record insert did not complete: %s", e)
            if record.id is None:
                try:
                    found = await self._remote(self.sessions.get_by_token, record.session_token)
                    record.id = found.id if found is not None else None
                except Exception as e:
                    logger.warning("Could not look up session record for rollback: %s", e)
        if record is not None and record.id is not None:
            try:
                await self._remote(self.sessions.delete, record.id)
            except Exception as e:
                logger.warning("Could not roll back session record %s: %s", record.id, e)
        if provider_session is not None:
            await self._delete_provider_session()

    # ------------------------------------------------------------------
    # Validation / refresh
    # ------------------------------------------------------------------

    async def is_authenticated(self) -> bool:
        """Return True only if the cached session is backed by a live SessionRecord.

        No remote call when nothing is cached. A locally expired entry is
        signed out without asking the store. Any failure, including a store
        outage, signs out and returns False: a forced re-login is preferred
        over trusting a session that could not be checked.
        """
        token = None
        try:
            await self._validate_local_session()
            return True
        except Unauthenticated:
            return False
        except AuthError as e:
            token = self._cached_token()
            logger.info("Session validation failed (%s); signing out", e.code)
        except Exception:
            token = self._cached_token()
            logger.warning("Session validation error; signing out", exc_info=True)
        await self._force_sign_out(token)
        return False

    async def refresh_auth(self) -> AuthResult:
        """Re-validate both sessions and refresh the cached user.

        Only user_data is rewritten. The session token and its expiry are not
        rotated; this is a heartbeat, not a re-login.
        """
        token = self._cached_token()
        try:
            entry, record = await self._validate_local_session()

            try:
                await self._remote(self.credentials.get_session, CURRENT_SESSION)
                identity = await self._remote(self.credentials.get_current_identity)
            except ProviderError as e:
                raise _translate(e, SessionInvalid) from e

            directory_record = await self._remote(self.directory.get_by_email, identity.email)
            if directory_record is None:
                raise UserNotFound("User document not found.")
            if directory_record.id != entry.user.id:
                raise SessionInvalid()
            user = directory_record.to_user()

            async with self._cache_lock:
                if self.cache.get(KEY_SESSION_TOKEN) != entry.session_token:
                    raise SessionInvalid("Session changed during refresh.")
                self.cache.update_user(user)
            return AuthResult(success=True, user=user, session=record)
        except Unauthenticated as e:
            return self._failure("Refresh", e)
        except AuthError as e:
            await self._force_sign_out(token)
            return self._failure("Refresh", e)
        except Exception:
            logger.exception("Unexpected refresh error")
            await self._force_sign_out(token)
            return AuthResult(success=False, error=SessionExpired.default_message, code=SessionExpired.__name__)

    async def _validate_local_session(self) -> tuple[LocalCacheEntry, SessionRecord]:
        entry = self.cache.read_entry()
        if entry is None or not entry.is_authenticated:
            raise Unauthenticated()
        now = self._clock()
        if entry.session_expires_at is not None and is_expired(entry.session_expires_at, now):
            raise SessionExpired()
        record = await self._remote(self.sessions.get_valid_by_token, entry.session_token, now)
        if record is None:
            raise SessionExpired()
        if record.user_id != entry.user.id:
            raise SessionInvalid()
        return entry, record

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    async def sign_out(self) -> None:
        """End the session remotely (best effort) and always clear the local cache."""
        token = self._cached_token()
        try:
            await self._end_remote_session(token)
        finally:
            async with self._cache_lock:
                self._clear_cache()
        logger.info("Signed out")

    async def _force_sign_out(self, token: str | None) -> None:
        """sign_out() for a specific token.

        Skipped when the cache already holds a different token: a newer login
        finished while this token was being validated, and it must survive.
        """
        if token is not None and self._cached_token() not in (None, token):
            logger.info("Skipping forced sign-out: a newer session replaced the failing one")
            return
        try:
            await self._end_remote_session(token)
        finally:
            async with self._cache_lock:
                current = self._cached_token()
                if token is None or current in (None, token):
                    self._clear_cache()

    async def _end_remote_session(self, token: str | None) -> None:
        if token:
            try:
                record = await self._remote(self.sessions.get_by_token, token)
                if record is not None:
                    await self._remote(self.sessions.delete, record.id)
            except Exception as e:
                logger.warning("Could not delete session record on sign-out: %s", e)
        await self._delete_provider_session()

    async def _delete_provider_session(self) -> None:
        """Delete the current provider-session, ignoring every failure."""
        try:
            await self._remote(self.credentials.delete_session, CURRENT_SESSION)
        except ProviderError as e:
            if e.status != 401:
                logger.warning("Provider session delete returned HTTP %s", e.status)
        except Exception as e:
            logger.warning("Provider session delete failed: %s", e)

    # ------------------------------------------------------------------
    # Enumeration / revocation / cleanup
    # ------------------------------------------------------------------

    async def get_current_user(self) -> User | None:
        """Local read of the cached user. No remote call."""
        try:
            return self.cache.read_user()
        except Exception as e:
            logger.warning("Could not read cached user: %s", e)
            return None

    async def get_user_sessions(self) -> list[SessionRecord]:
        """Unexpired sessions of the cached user, newest first. [] if none or on error."""
        try:
            user = self.cache.read_user()
            if user is None or user.id is None:
                return []
            return await self._remote(self.sessions.list_active_for_user, user.id, self._clock())
        except Exception as e:
            logger.warning("Could not list sessions: %s", e)
            return []

    async def revoke_session(self, session_id: int) -> bool:
        """Delete one of the current user's sessions.

        The delete matches on (id, user_id), so another user's session id is
        refused. Revoking the session that backs this device also signs the
        device out.
        """
        try:
            entry = self.cache.read_entry()
            if entry is None or entry.user.id is None:
                raise Unauthenticated()
            record = await self._remote(self.sessions.get_by_id, session_id)
            if record is None or record.user_id != entry.user.id:
                logger.warning("Refused to revoke session %s: not found or not owned by user %s", session_id, entry.user.id)
                return False
            if not await self._remote(self.sessions.delete_for_user, session_id, entry.user.id):
                return False
        except AuthError as e:
            logger.info("Revoke session %s failed: %s", session_id, e.message)
            return False
        except Exception as e:
            logger.warning("Revoke session %s failed: %s", session_id, e)
            return False

        logger.info("Revoked session %s for user %s", session_id, entry.user.id)
        if record.session_token == entry.session_token:
            await self.sign_out()
        return True

    async def cleanup_expired_sessions(self, user_id: int | None = None) -> int:
        """Delete expired SessionRecords one by one. Returns how many were removed.

        Maintenance only: individual failures are logged and skipped, and
        nothing is raised to the caller.
        """
        try:
            expired = await self._remote(self.sessions.list_expired, self._clock(), user_id)
        except Exception as e:
            logger.warning("Expired session lookup failed: %s", e)
            return 0
        removed = 0
        for record in expired:
            try:
                if await self._remote(self.sessions.delete, record.id):
                    removed += 1
            except Exception as e:
                logger.warning("Could not delete expired session %s: %s", record.id, e)
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    async def change_password(self, current_password: str, new_password: str) -> AuthResult:
        """Change the password at the provider, then re-hash it in the directory."""
        try:
            req = self._validate(PasswordChange, current_password=current_password, new_password=new_password)
            self._check_password_length(req.new_password, label="New password")
            entry = self.cache.read_entry()
            if entry is None:
                raise Unauthenticated()

            password_hash = await asyncio.to_thread(hash_password, req.new_password)
            try:
                await self._remote(self.credentials.update_password, req.new_password, req.current_password)
            except ProviderError as e:
                if e.status == 401:
                    raise InvalidCredentials("Current password is incorrect.") from e
                if e.status == 400:
                    raise InvalidInput("Invalid password format.") from e
                raise _translate(e, InvalidCredentials) from e

            if not await self._remote(self.directory.update, entry.user.id, password_hash=password_hash):
                raise UserNotFound()
            logger.info("Password changed for user id=%s", entry.user.id)
            return AuthResult(success=True, user=entry.user)
        except AuthError as e:
            return self._failure("Password change", e)
        except Exception:
            logger.exception("Unexpected password change error")
            return AuthResult(success=False, error="Failed to change password.", code=RemoteUnavailable.__name__)

    async def delete_account(self) -> AuthResult:
        """Delete the current user's sessions and directory record, then sign out.

        The provider account is left in place; the client API cannot delete it.
        """
        try:
            entry = self.cache.read_entry()
            if entry is None or entry.user.id is None:
                raise Unauthenticated()
            removed = await self._remote(self.sessions.delete_all_for_user, entry.user.id)
            await self._remote(self.directory.delete, entry.user.id)
        except AuthError as e:
            return self._failure("Account deletion", e)
        except Exception:
            logger.exception("Unexpected account deletion error")
            return AuthResult(success=False, error="Failed to delete account.", code=RemoteUnavailable.__name__)

        logger.info("Deleted user id=%s and %d session(s)", entry.user.id, removed)
        await self.sign_out()
        return AuthResult(success=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _remote(self, fn, *args):
        """Run a blocking store/provider call in a worker thread with a timeout.

        IntegrityError passes through untouched so sign_up can map it to
        DuplicateUser. Other SQLAlchemy errors become RemoteUnavailable.
        """
        return await self._bounded(asyncio.to_thread(fn, *args), fn)

    async def _bounded(self, awaitable, fn):
        timeout = self.settings.remote_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("%s timed out after %.1fs", getattr(fn, "__qualname__", fn), timeout)
            raise RemoteUnavailable("The server took too long to respond. Try again.") from e
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.warning("Store call %s failed: %s", getattr(fn, "__qualname__", fn), e)
            raise RemoteUnavailable() from e

    def _cached_token(self) -> str | None:
        try:
            return self.cache.get(KEY_SESSION_TOKEN)
        except Exception as e:
            logger.warning("Could not read cached session token: %s", e)
            return None

    def _clear_cache(self) -> None:
        try:
            self.cache.clear()
        except Exception:
            logger.exception("Could not clear local session cache")

    def _check_password_length(self, password: str, label: str = "Password") -> None:
        minimum = self.settings.min_password_length
        if len(password) < minimum:
            raise InvalidInput(f"{label} must be at least {minimum} characters long.")

    @staticmethod
    def _validate(model: type[BaseModel], **data) -> BaseModel:
        try:
            return model(**data)
        except ValidationError as e:
            raise InvalidInput(first_error(e)) from e

    @staticmethod
    def _failure(operation: str, exc: AuthError) -> AuthResult:
        logger.info("%s failed: %s (%s)", operation, exc.message, exc.code)
        return AuthResult(success=False, error=exc.message, code=exc.code)
