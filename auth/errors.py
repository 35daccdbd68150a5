"""
auth/errors.py -- Error taxonomy for the session core.

Every error carries a stable code (the class name) and a human-readable
message, the same {"code", "message"} pair the UI layer surfaces in alerts.

These exceptions are raised inside auth/ only. SessionManager converts them
to AuthResult / False / [] at its public boundary, so UI code never needs a
try/except around a session call.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for expected session-core failures."""

    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class DuplicateUser(AuthError):
    default_message = "User with this email already exists."


class InvalidCredentials(AuthError):
    default_message = "Invalid email or password."


class UserNotFound(AuthError):
    default_message = "User not found."


class SessionExpired(AuthError):
    default_message = "Session expired. Please sign in again."


class SessionInvalid(AuthError):
    default_message = "Session is no longer valid. Please sign in again."


class RemoteUnavailable(AuthError):
    default_message = "Service unavailable. Check your connection and try again."


class Unauthenticated(AuthError):
    default_message = "You must be signed in to do that."


class InvalidInput(AuthError):
    default_message = "Invalid input."


class ProviderError(Exception):
    """Non-2xx response from the identity provider.

    Kept separate from AuthError because the same HTTP status means different
    things depending on the call: a 401 from create_session is a wrong
    password, a 401 from get_session is a dead provider-session. The session
    manager does that translation.
    """

    def __init__(self, status: int, message: str = "", type_: str = "") -> None:
        self.status = status
        self.message = message or f"Identity provider returned HTTP {status}"
        self.type = type_
        super().__init__(self.message)
