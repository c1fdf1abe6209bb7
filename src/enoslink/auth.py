"""Access-token lifecycle for the EnOS API management token service.

A :class:`TokenManager` is shared by every call made through one
connection.  Only one token fetch or refresh is in flight at a time; other
callers wait (bounded) for it and then reuse the new token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import aiohttp

from enoslink._constants import (
    JSON_HEADERS,
    TOKEN_GET_PATH,
    TOKEN_REFRESH_MARGIN,
    TOKEN_REFRESH_PATH,
    TOKEN_WAIT_TIMEOUT,
)
from enoslink._crypto import sign_token_request
from enoslink.errors import AuthError, ClientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    """An issued access token.  Replaced, never mutated, on refresh."""

    value: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def needs_refresh(self, now: float | None = None) -> bool:
        """True once *now* is inside the refresh margin before expiry."""
        now = time.time() if now is None else now
        return now >= self.expires_at - TOKEN_REFRESH_MARGIN


class TokenManager:
    """Owns the current :class:`AccessToken` and coordinates its renewal.

    Args:
        token_server_url: Base URL of the token service.
        app_key: Application access key.
        app_secret: Application secret key.
        session: Callable returning the shared :class:`aiohttp.ClientSession`.
        wait_timeout: Seconds a caller waits for someone else's in-flight
            fetch before giving up.
    """

    def __init__(
        self,
        token_server_url: str,
        app_key: str,
        app_secret: str,
        session: Callable[[], aiohttp.ClientSession],
        *,
        wait_timeout: float = TOKEN_WAIT_TIMEOUT,
    ) -> None:
        self._token_server_url = token_server_url.rstrip("/")
        self._app_key = app_key
        self._app_secret = app_secret
        self._session = session
        self._wait_timeout = wait_timeout
        self._token: AccessToken | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken | None:
        return self._token

    def needs_initial_auth(self) -> bool:
        return self._token is None

    def needs_refresh(self) -> bool:
        return self._token is not None and self._token.needs_refresh()

    async def ensure_valid(self) -> str:
        """Return a usable access token value, fetching or refreshing as needed.

        Raises :class:`AuthError` if no unexpired token is available after
        the fetch/refresh attempt, or after waiting ``wait_timeout`` seconds
        for another caller's attempt.
        """
        if not self.needs_initial_auth() and not self.needs_refresh():
            return self._usable_token()

        if not self._refresh_lock.locked():
            async with self._refresh_lock:
                await self._fetch_or_refresh()
            return self._usable_token()

        try:
            async with asyncio.timeout(self._wait_timeout):
                await self._refresh_lock.acquire()
        except TimeoutError:
            logger.warning("Timed out after %.1fs waiting for access token", self._wait_timeout)
            if self._token is not None and not self._token.is_expired():
                return self._token.value
            raise AuthError("Unsuccessful auth: timed out waiting for access token") from None
        # Someone else did the work; only re-check the result.
        self._refresh_lock.release()
        return self._usable_token()

    async def _fetch_or_refresh(self) -> None:
        # Re-check after acquiring the lock: the state may have changed
        # between the caller's check and now.
        if not self.needs_initial_auth() and not self.needs_refresh():
            return
        session = self._session()
        try:
            if self._token is None:
                self._token = await _http_get_token(
                    session, self._token_server_url, self._app_key, self._app_secret
                )
                logger.debug("Obtained access token, expires at %s", self._token.expires_at)
            else:
                self._token = await _http_refresh_token(
                    session,
                    self._token_server_url,
                    self._app_key,
                    self._app_secret,
                    self._token.value,
                )
                logger.debug("Refreshed access token, expires at %s", self._token.expires_at)
        except (ClientError, aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.warning("Failed to obtain access token: %s", e, exc_info=True)

    def _usable_token(self) -> str:
        if self._token is None or self._token.is_expired():
            raise AuthError("Unsuccessful auth: no valid access token")
        return self._token.value


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _parse_token_body(body: object, issued_at: float) -> AccessToken:
    """Turn a token-service response into an :class:`AccessToken`.

    Raises :class:`AuthError` when the service reports a failure and
    :class:`ValueError` when the body does not have the expected shape.
    """
    if not isinstance(body, dict):
        raise ValueError(f"Unexpected token response: {body!r}")
    if body.get("status") != 0:
        raise AuthError(f"Token service error {body.get('status')}: {body.get('msg', '')}")
    data = body.get("data")
    if not isinstance(data, dict) or not data.get("accessToken"):
        raise ValueError(f"Token response has no accessToken: {body!r}")
    try:
        expire = float(data.get("expire") or 0)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Token response has invalid expire: {data.get('expire')!r}") from e
    return AccessToken(
        value=str(data["accessToken"]),
        issued_at=issued_at,
        expires_at=issued_at + expire,
    )


async def _post_token_service(
    session: aiohttp.ClientSession, url: str, payload: dict[str, object]
) -> AccessToken:
    issued_at = time.time()
    async with session.post(url, json=payload, headers=JSON_HEADERS) as resp:
        resp.raise_for_status()
        body = await resp.json(content_type=None)
    return _parse_token_body(body, issued_at)


async def _http_get_token(
    session: aiohttp.ClientSession, token_server_url: str, app_key: str, app_secret: str
) -> AccessToken:
    """Request a brand-new access token."""
    timestamp = int(time.time() * 1000)
    payload: dict[str, object] = {
        "appKey": app_key,
        "encryption": sign_token_request(app_key, app_secret, timestamp),
        "timestamp": timestamp,
    }
    return await _post_token_service(session, token_server_url + TOKEN_GET_PATH, payload)


async def _http_refresh_token(
    session: aiohttp.ClientSession,
    token_server_url: str,
    app_key: str,
    app_secret: str,
    access_token: str,
) -> AccessToken:
    """Exchange a token that is close to expiry for a fresh one."""
    timestamp = int(time.time() * 1000)
    payload: dict[str, object] = {
        "accessToken": access_token,
        "appKey": app_key,
        "encryption": sign_token_request(app_key, app_secret, timestamp),
        "timestamp": timestamp,
    }
    return await _post_token_service(session, token_server_url + TOKEN_REFRESH_PATH, payload)
