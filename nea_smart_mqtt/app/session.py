from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from .errors import AuthError, RefreshExpired, SessionExpired
from .redact import mask

_LOGGER = logging.getLogger("nea_session")

DEFAULT_TTL_S = 3600.0
EXPIRY_MARGIN_S = 60.0

T = TypeVar("T")


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={mask(self.username)!r}, password='***')"


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: str
    expires_at: float  # monotonic
    obtained_at: float  # wall clock

    def expired(self, now: float) -> bool:
        return not self.access_token or now >= self.expires_at

    def __repr__(self) -> str:
        return f"Session(access_token={mask(self.access_token)!r}, expires_at={self.expires_at:.0f})"


class SessionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESH_PENDING = "refresh_pending"


class AuthTransport(Protocol):
    async def request_login(self, username: str, password: str) -> dict[str, Any]: ...

    async def request_refresh(self, refresh_token: str) -> dict[str, Any]: ...


class SessionManager:
    """Owns the cloud credential and its refresh cycle.

    Only one login or refresh runs at a time. Callers that need a credential
    while one is in flight wait on the lock and then reuse the session it
    produced instead of starting their own.
    """

    def __init__(
        self,
        transport: AuthTransport,
        credentials: Credentials,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._transport = transport
        self._credentials = credentials
        self._clock = clock
        self._wall = wall_clock
        self._lock = asyncio.Lock()
        self._session: Session | None = None
        self._state = SessionState.UNAUTHENTICATED
        self._generation = 0
        self.login_count = 0
        self.refresh_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    def _build(self, js: dict[str, Any], *, fallback_refresh: str = "") -> Session | None:
        data = js.get("data") if isinstance(js.get("data"), dict) else js
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            return None
        refresh = data.get("refresh_token")
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            ttl = max(float(expires_in), 0.0)
        else:
            ttl = DEFAULT_TTL_S
        ttl = max(ttl - EXPIRY_MARGIN_S, ttl / 2)
        return Session(
            access_token=token,
            refresh_token=refresh if isinstance(refresh, str) and refresh else fallback_refresh,
            expires_at=self._clock() + ttl,
            obtained_at=self._wall(),
        )

    def _install(self, session: Session) -> Session:
        self._session = session
        self._state = SessionState.AUTHENTICATED
        self._generation += 1
        return session

    async def _do_login(self, credentials: Credentials) -> Session:
        self.login_count += 1
        _LOGGER.info("Logging in to cloud as %s", mask(credentials.username))
        try:
            js = await self._transport.request_login(credentials.username, credentials.password)
        except BaseException:
            self._session = None
            self._state = SessionState.UNAUTHENTICATED
            raise
        session = self._build(js)
        if session is None:
            self._session = None
            self._state = SessionState.UNAUTHENTICATED
            raise AuthError("login response carried no access_token")
        return self._install(session)

    async def _do_refresh(self, session: Session) -> Session:
        if not session.refresh_token:
            raise RefreshExpired("no refresh token available")
        self.refresh_count += 1
        self._state = SessionState.REFRESH_PENDING
        try:
            js = await self._transport.request_refresh(session.refresh_token)
        except RefreshExpired:
            self._session = None
            self._state = SessionState.UNAUTHENTICATED
            raise
        except BaseException:
            # transport trouble: the current credential stays usable until expiry
            self._state = SessionState.AUTHENTICATED if self._session else SessionState.UNAUTHENTICATED
            raise
        new = self._build(js, fallback_refresh=session.refresh_token)
        if new is None:
            self._session = None
            self._state = SessionState.UNAUTHENTICATED
            raise RefreshExpired("refresh response carried no access_token")
        _LOGGER.debug("Access token refreshed")
        return self._install(new)

    async def authenticate(self, credentials: Credentials | None = None) -> Session:
        async with self._lock:
            if credentials is not None:
                self._credentials = credentials
            return await self._do_login(self._credentials)

    async def refresh(self, session: Session) -> Session:
        async with self._lock:
            return await self._do_refresh(session)

    async def ensure_session(self) -> Session:
        s = self._session
        if s is not None and not s.expired(self._clock()):
            return s
        async with self._lock:
            s = self._session
            if s is not None and not s.expired(self._clock()):
                return s
            if s is not None and s.refresh_token:
                try:
                    return await self._do_refresh(s)
                except RefreshExpired:
                    _LOGGER.info("Refresh token rejected, logging in again")
            return await self._do_login(self._credentials)

    async def scheduled_refresh(self) -> Session:
        """Refresh-timer callback.

        ``RefreshExpired`` leads to exactly one fallback login. Errors from
        that login propagate: ``NetworkError`` is retried on the next tick by
        the scheduler, ``AuthError`` is fatal.
        """
        generation = self._generation
        async with self._lock:
            if self._generation != generation and self._session is not None:
                return self._session
            if self._session is None:
                return await self._do_login(self._credentials)
            try:
                return await self._do_refresh(self._session)
            except RefreshExpired:
                _LOGGER.warning("Refresh token expired, falling back to full login")
            return await self._do_login(self._credentials)

    def invalidate(self) -> None:
        s = self._session
        if s is None:
            return
        self._session = replace(s, access_token="", expires_at=0.0)
        _LOGGER.debug("Access token invalidated")

    async def call(self, fn: Callable[[Session], Awaitable[T]]) -> T:
        """Run ``fn`` with a valid session, re-authenticating once on a 401."""
        session = await self.ensure_session()
        try:
            return await fn(session)
        except SessionExpired:
            _LOGGER.info("Access token rejected by the cloud, renewing")
            self.invalidate()
        session = await self.ensure_session()
        return await fn(session)
