from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from .errors import AuthError, CommandRejected, NetworkError, ParseError, RefreshExpired, SessionExpired
from .parsers import (
    InstallationSnapshot,
    LiveSnapshot,
    UserData,
    parse_installation_data,
    parse_live_data,
    parse_user_data,
)
from .redact import debug_dump, redact_text
from .referentials import ReferentialTable, decode_referentials
from .session import Session

_LOGGER = logging.getLogger("nea_cloud")

LOGIN_PATH = "/v2/auth/login"
REFRESH_PATH = "/v2/auth/refresh"
USER_DATA_PATH_FMT = "/v2/users/{email}/getUserData"
INSTALL_DATA_PATH_FMT = "/v2/users/{email}/getDataofInstall?demand={unique}&installsList={unique}"
LIVE_DATA_PATH_FMT = "/v2/users/{email}/getLiveData?installId={unique}"
REFERENTIALS_PATH = "/v2/referentials"
CHANNEL_CMD_PATH_FMT = "/v2/installations/{unique}/channels/{channel}"

USER_AGENT = "nea-smart-mqtt-bridge"


def _q(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


class CloudClient:
    """Thin client for the NEA Smart cloud.

    HTTP runs through ``urllib`` in a worker thread so a slow cloud never
    blocks the event loop. Every call raises one of the bridge errors:
    ``NetworkError`` for transport trouble and 5xx, ``SessionExpired`` for a
    401 on a data call, ``ParseError`` for an unexpected body.
    """

    def __init__(self, *, api_base: str, email: str, timeout_s: float = 25.0):
        self._api_base = api_base.rstrip("/")
        self._email = email
        self._timeout_s = timeout_s

    @property
    def api_base(self) -> str:
        return self._api_base

    def _http(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[int, bytes]:
        url = path if path.startswith("http") else f"{self._api_base}{path}"
        data: bytes | None = None
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(url=url, method=method.upper(), data=data)
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", USER_AGENT)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        for k, v in (headers or {}).items():
            req.add_header(k, v)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                return int(getattr(resp, "status", 200)), resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read()
            except OSError:
                body = b""
            return int(e.code), body

    async def _call(
        self,
        method: str,
        path: str,
        *,
        session: Session | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        headers: dict[str, str] = {}
        if session is not None:
            headers["Authorization"] = f"Bearer {session.access_token}"
        _LOGGER.debug("HTTP %s %s", method, redact_text(path))
        try:
            status, raw = await asyncio.to_thread(self._http, method, path, payload=payload, headers=headers)
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise NetworkError(f"{method} {redact_text(path)} failed: {redact_text(str(e))}") from e

        text = raw.decode("utf-8", errors="replace") if raw else ""
        if status >= 500:
            raise NetworkError(f"{method} {redact_text(path)} -> HTTP {status}")
        body: Any = None
        if text:
            try:
                body = json.loads(text)
            except json.JSONDecodeError:
                body = text
        if status >= 400:
            _LOGGER.debug("HTTP %s %s -> %s; body=%s", method, redact_text(path), status, redact_text(text[:200]))
        return status, body

    # ----------------------------------------------------------- auth

    async def request_login(self, username: str, password: str) -> dict[str, Any]:
        status, body = await self._call("POST", LOGIN_PATH, payload={"username": username, "password": password})
        if status in (400, 401, 403):
            raise AuthError(f"Invalid credentials (status {status})")
        if status >= 400:
            raise NetworkError(f"login -> HTTP {status}")
        if not isinstance(body, dict):
            raise NetworkError("login response is not a JSON object")
        return body

    async def request_refresh(self, refresh_token: str) -> dict[str, Any]:
        status, body = await self._call("POST", REFRESH_PATH, payload={"refresh_token": refresh_token})
        if status in (400, 401, 403):
            raise RefreshExpired(f"refresh rejected (status {status})")
        if status >= 400:
            raise NetworkError(f"refresh -> HTTP {status}")
        if not isinstance(body, dict):
            raise NetworkError("refresh response is not a JSON object")
        return body

    # ----------------------------------------------------------- data

    async def _get_json(self, session: Session, path: str, label: str) -> Any:
        status, body = await self._call("GET", path, session=session)
        if status == 401:
            raise SessionExpired(f"{label}: unauthorized")
        if status >= 400:
            raise NetworkError(f"{label} -> HTTP {status}")
        if not isinstance(body, (dict, list)):
            raise ParseError(f"{label}: response is not JSON")
        debug_dump(_LOGGER, label, body)
        return body

    async def fetch_user_data(self, session: Session) -> UserData:
        body = await self._get_json(session, USER_DATA_PATH_FMT.format(email=_q(self._email)), "getUserData")
        return parse_user_data(body)

    async def fetch_installation(self, session: Session, unique: str) -> InstallationSnapshot:
        path = INSTALL_DATA_PATH_FMT.format(email=_q(self._email), unique=_q(unique))
        body = await self._get_json(session, path, "getDataofInstall")
        return parse_installation_data(body, unique)

    async def fetch_live_data(self, session: Session, unique: str) -> LiveSnapshot:
        path = LIVE_DATA_PATH_FMT.format(email=_q(self._email), unique=_q(unique))
        body = await self._get_json(session, path, "getLiveData")
        return parse_live_data(body, unique)

    async def fetch_referentials(self, session: Session) -> ReferentialTable:
        body = await self._get_json(session, REFERENTIALS_PATH, "referentials")
        return decode_referentials(body)

    async def send_channel_command(
        self,
        session: Session,
        unique: str,
        channel_id: str,
        changes: dict[str, Any],
    ) -> None:
        path = CHANNEL_CMD_PATH_FMT.format(unique=_q(unique), channel=_q(channel_id))
        status, body = await self._call("POST", path, session=session, payload={"data": changes})
        if status == 401:
            raise SessionExpired("channel command: unauthorized")
        if status >= 400:
            raise CommandRejected(f"channel command -> HTTP {status}")
        if isinstance(body, dict) and body.get("success") is False:
            raise CommandRejected(f"channel command refused: {redact_text(str(body.get('message') or ''))}")
