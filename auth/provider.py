"""
auth/provider.py -- HTTP client for the remote identity provider (Credential Store).

Speaks the Appwrite-compatible account REST API:

  POST   /account                    create_account
  POST   /account/sessions/email     create_session (the actual password check)
  GET    /account/sessions/{id}      get_session
  GET    /account                    get_current_identity
  DELETE /account/sessions/{id}      delete_session
  PATCH  /account/password           update_password

The provider-session travels as a cookie. requests.Session keeps it in its
cookie jar between calls. Some deployments only hand non-browser clients the
cookie through the X-Fallback-Cookies response header; that value is echoed
back on every later request.

Error policy:
  Non-2xx responses raise ProviderError(status, message, type). The status is
  kept because its meaning depends on the call (see auth/errors.py).
  Transport failures (DNS, refused connection, timeout) raise RemoteUnavailable.

All calls are blocking. SessionManager runs them in a worker thread with an
overall timeout; the per-request timeout here is the transport-level bound.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import requests

from auth.errors import ProviderError, RemoteUnavailable
from auth.models import Identity, ProviderSession

logger = logging.getLogger("marquee.provider")

CURRENT_SESSION = "current"


class CredentialStore:
    """Client for one provider project.

    Usage:
        provider = CredentialStore("https://cloud.appwrite.io/v1", "my-project")
        provider.create_session("jane@x.com", "secret1")
        identity = provider.get_current_identity()
        provider.delete_session()
    """

    def __init__(self, endpoint: str, project_id: str, timeout: float = 10.0) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout
        self._fallback_cookies: Optional[str] = None
        # max_redirects=3 replaces the requests default of 30. The provider is a
        # known API; more hops than that is a misconfiguration, not a feature.
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "X-Appwrite-Project": project_id,
            }
        )

    # ------------------------------------------------------------------
    # Account operations
    # ------------------------------------------------------------------

    def create_account(self, email: str, password: str, name: str) -> Identity:
        data = self._request(
            "POST",
            "/account",
            json={"userId": "unique()", "email": email, "password": password, "name": name},
        )
        return _to_identity(data)

    def create_session(self, email: str, password: str) -> ProviderSession:
        data = self._request("POST", "/account/sessions/email", json={"email": email, "password": password})
        return _to_session(data)

    def get_session(self, session_id: str = CURRENT_SESSION) -> ProviderSession:
        return _to_session(self._request("GET", f"/account/sessions/{session_id}"))

    def get_current_identity(self) -> Identity:
        return _to_identity(self._request("GET", "/account"))

    def delete_session(self, session_id: str = CURRENT_SESSION) -> None:
        self._request("DELETE", f"/account/sessions/{session_id}")
        if session_id == CURRENT_SESSION:
            self._session.cookies.clear()
            self._fallback_cookies = None

    def update_password(self, new_password: str, old_password: str) -> Identity:
        data = self._request(
            "PATCH",
            "/account/password",
            json={"password": new_password, "oldPassword": old_password},
        )
        return _to_identity(data)

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        headers = {}
        if self._fallback_cookies:
            headers["X-Fallback-Cookies"] = self._fallback_cookies
        try:
            resp = self._session.request(
                method,
                f"{self.endpoint}{path}",
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Identity provider %s %s failed: %s", method, path, e)
            raise RemoteUnavailable() from e

        fallback = resp.headers.get("X-Fallback-Cookies")
        if fallback:
            self._fallback_cookies = fallback

        if resp.status_code >= 400:
            body = _safe_json(resp)
            raise ProviderError(resp.status_code, body.get("message", ""), body.get("type", ""))
        if resp.status_code == 204 or not resp.content:
            return {}
        return _safe_json(resp)


# ---------------------------------------------------------------------------
# Response mappers
# ---------------------------------------------------------------------------


def _safe_json(resp: requests.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _to_identity(data: dict[str, Any]) -> Identity:
    return Identity(
        id=str(data.get("$id", "")),
        email=data.get("email", ""),
        name=data.get("name", ""),
        created_at=_parse_ts(data.get("$createdAt")),
        updated_at=_parse_ts(data.get("$updatedAt")),
    )


def _to_session(data: dict[str, Any]) -> ProviderSession:
    return ProviderSession(
        id=str(data.get("$id", "")),
        user_id=str(data.get("userId", "")),
        expires_at=_parse_ts(data.get("expire")),
        created_at=_parse_ts(data.get("$createdAt")),
    )
