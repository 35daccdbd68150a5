"""
auth/context.py -- SessionContext: process-wide session state for the UI layer.

An explicit object with a lifecycle, not a module-level global:

    context = SessionContext(manager)
    await context.start()          # LOADING -> AUTHENTICATED / UNAUTHENTICATED
    unsubscribe = context.subscribe(render)
    ...
    await context.close()          # cancels the validation loop

or `async with SessionContext(manager) as context: ...`.

State machine:

    UNINITIALIZED --start()--> LOADING --+--> AUTHENTICATED(user, sessions)
                                         +--> UNAUTHENTICATED
    AUTHENTICATED --logout() / failed validation / failed refresh--> UNAUTHENTICATED
    UNAUTHENTICATED --login(user)--> AUTHENTICATED

While LOADING, consumers must render nothing protected.

The validation loop is passive drift detection: every validation_interval
seconds, and only while AUTHENTICATED, it calls is_authenticated(); False
logs out. It is not coordinated with user-triggered refreshes. Both paths
call idempotent manager operations, so overlap costs duplicate remote calls
and nothing else.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from auth.manager import SessionManager
from auth.models import SessionRecord, User
from core.commands import OptimisticUpdate

logger = logging.getLogger("marquee.context")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view handed to listeners."""

    state: SessionState
    user: User | None
    sessions: tuple[SessionRecord, ...]

    @property
    def is_logged_in(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self.state in (SessionState.UNINITIALIZED, SessionState.LOADING)


Listener = Callable[[SessionSnapshot], None]


class SessionContext:
    def __init__(self, manager: SessionManager, validation_interval: float | None = None) -> None:
        self.manager = manager
        self.validation_interval = validation_interval or manager.settings.session_validation_interval
        self._state = SessionState.UNINITIALIZED
        self._user: User | None = None
        self._sessions: list[SessionRecord] = []
        self._listeners: list[Listener] = []
        self._timer: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def sessions(self) -> list[SessionRecord]:
        return list(self._sessions)

    @property
    def is_logged_in(self) -> bool:
        return self._state == SessionState.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self._state in (SessionState.UNINITIALIZED, SessionState.LOADING)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(state=self._state, user=self._user, sessions=tuple(self._sessions))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Resolve the initial state and start the validation loop. Idempotent."""
        if self._timer is not None:
            return
        await self.initialize()
        self._timer = asyncio.create_task(self._validation_loop())

    async def close(self) -> None:
        """Cancel the validation loop and any pending session reloads."""
        tasks = list(self._pending)
        if self._timer is not None:
            tasks.append(self._timer)
            self._timer = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    async def __aenter__(self) -> SessionContext:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        self._transition(SessionState.LOADING, self._user, self._sessions)
        try:
            if not await self.manager.is_authenticated():
                logger.info("No valid session found")
                self._transition(SessionState.UNAUTHENTICATED, None, [])
                return
            user = await self.manager.get_current_user()
            if user is None:
                logger.warning("Session is valid but no user is cached; logging out")
                await self.logout()
                return
            sessions = await self.manager.get_user_sessions()
            self._transition(SessionState.AUTHENTICATED, user, sessions)
            logger.info("Session initialized for user id=%s", user.id)
        except Exception:
            logger.exception("Error initializing session")
            self._transition(SessionState.UNAUTHENTICATED, None, [])

    async def _validation_loop(self) -> None:
        """Re-validate the session every validation_interval seconds.

        CancelledError from close() propagates out of asyncio.sleep and ends
        the loop.
        """
        while True:
            await asyncio.sleep(self.validation_interval)
            await self.validate_current_session()

    async def validate_current_session(self) -> None:
        if self._state != SessionState.AUTHENTICATED:
            return
        try:
            valid = await self.manager.is_authenticated()
        except Exception:
            logger.exception("Error validating session")
            valid = False
        if not valid:
            logger.info("Session validation failed, logging out")
            await self.logout()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def login(self, user: User) -> None:
        """Enter AUTHENTICATED with a user from a successful sign_in().

        Synchronous; the session list reloads in the background. Must be
        called from inside the running event loop.
        """
        self._transition(SessionState.AUTHENTICATED, user, self._sessions)
        task = asyncio.create_task(self.load_sessions())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.info("User id=%s logged in", user.id)

    async def logout(self) -> None:
        """Sign out through the manager, then enter UNAUTHENTICATED no matter what."""
        try:
            await self.manager.sign_out()
        except Exception:
            logger.exception("Error during logout")
        finally:
            self._transition(SessionState.UNAUTHENTICATED, None, [])

    async def refresh_session(self) -> bool:
        result = await self.manager.refresh_auth()
        if result.success and result.user is not None:
            self._transition(SessionState.AUTHENTICATED, result.user, self._sessions)
            await self.load_sessions()
            return True
        logger.info("Session refresh failed: %s", result.error)
        await self.logout()
        return False

    async def load_sessions(self) -> None:
        sessions = await self.manager.get_user_sessions()
        if self._state != SessionState.AUTHENTICATED:
            # Logged out while the list was loading.
            return
        self._transition(self._state, self._user, sessions)

    async def revoke_session(self, session_id: int) -> bool:
        """Remove a session from the list now; restore it if the server refuses."""

        def apply() -> list[SessionRecord]:
            before = list(self._sessions)
            self._transition(self._state, self._user, [s for s in before if s.id != session_id])
            return before

        def rollback(before: list[SessionRecord]) -> None:
            self._transition(self._state, self._user, before)

        revoked = await OptimisticUpdate(
            apply=apply,
            commit=lambda: self.manager.revoke_session(session_id),
            rollback=rollback,
            name=f"revoke of session {session_id}",
        ).run()
        if revoked and await self.manager.get_current_user() is None:
            # The revoked session was this device's own.
            self._transition(SessionState.UNAUTHENTICATED, None, [])
        return revoked

    def _transition(self, state: SessionState, user: User | None, sessions: list[SessionRecord]) -> None:
        self._state = state
        self._user = user
        self._sessions = list(sessions)
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener raised")
