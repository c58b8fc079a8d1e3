from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .cloud_client import CloudClient
from .errors import CommandRejected, InvalidCommand, OutOfRange, UnsupportedField, ZoneNotFound
from .reconciler import Reconciler, Update
from .referentials import MODE_PERMANENT, ReferentialTable
from .session import SessionManager
from .temperature import celsius_to_raw
from .zone_store import (
    LOCKED,
    MODE,
    MODE_COOL,
    MODE_HEAT,
    MODE_OFF,
    MUTABLE_FIELDS,
    PRESET,
    RING_LIGHT,
    TARGET_TEMPERATURE,
    Source,
    ZoneEntry,
)

_LOGGER = logging.getLogger("nea_commands")

_TRUE = {"on", "true", "1", "yes"}
_FALSE = {"off", "false", "0", "no"}


@dataclass(frozen=True)
class Command:
    zone_id: str
    field: str
    value: Any


def parse_command(base_topic: str, topic: str, payload: str) -> Command | None:
    """Map ``{base}/zones/{zone_id}/{field}/set`` to a Command."""
    prefix = f"{base_topic}/zones/"
    if not topic.startswith(prefix) or not topic.endswith("/set"):
        return None
    parts = topic[len(prefix) : -len("/set")].split("/")
    if len(parts) != 2 or not all(parts):
        return None
    zone_id, field = parts
    s = payload.strip()
    value: Any = s
    if s and s[0] == "{":
        try:
            obj = json.loads(s)
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict) or "value" not in obj:
            return None
        value = obj["value"]
    return Command(zone_id=zone_id, field=field, value=value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise InvalidCommand(f"expected ON/OFF, got {value!r}")


def _as_setpoint(value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidCommand("setpoint must be a number")
    try:
        v = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidCommand(f"setpoint must be a number, got {value!r}") from e
    if v != v:
        raise InvalidCommand("setpoint must be a number")
    return round(v * 2) / 2


class CommandTranslator:
    """Turns local commands into optimistic writes plus cloud calls."""

    def __init__(
        self,
        reconciler: Reconciler,
        client: CloudClient,
        sessions: SessionManager,
        referentials: Callable[[], ReferentialTable],
    ):
        self._reconciler = reconciler
        self._client = client
        self._sessions = sessions
        self._referentials = referentials
        self._accepting = True
        self._inflight: set[asyncio.Task] = set()

    @property
    def accepting(self) -> bool:
        return self._accepting

    def close(self) -> None:
        self._accepting = False

    async def drain(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def handle_command(self, zone_id: str, field: str, requested_value: Any) -> None:
        if not self._accepting:
            raise CommandRejected("bridge is shutting down")
        entry = self._reconciler.store.get(zone_id)
        if entry is None:
            raise ZoneNotFound(zone_id)
        if field not in MUTABLE_FIELDS:
            raise UnsupportedField(field)

        value = self.coerce(entry, field, requested_value)
        changes = self.cloud_changes(entry, field, value)
        channel_ids = entry.record.channel_ids
        if not channel_ids:
            raise InvalidCommand(f"zone {zone_id} has no channels")
        unique = entry.record.installation_unique

        await self._reconciler.submit([Update(zone_id, field, value, Source.COMMAND, self._reconciler.now())])
        _LOGGER.info("Zone %s: %s -> %r (optimistic)", zone_id, field, value)

        task = asyncio.get_running_loop().create_task(
            self._send(zone_id, field, value, unique, channel_ids, changes)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _send(
        self,
        zone_id: str,
        field: str,
        value: Any,
        unique: str,
        channel_ids: list[str],
        changes: dict[str, Any],
    ) -> None:
        try:
            for channel_id in channel_ids:
                await self._sessions.call(
                    lambda s, cid=channel_id: self._client.send_channel_command(s, unique, cid, changes)
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _LOGGER.warning("Zone %s: %s command failed (%s), reverting", zone_id, field, e)
            await self._reconciler.submit([Update(zone_id, field, value, Source.REJECT, self._reconciler.now())])
            return
        _LOGGER.debug("Zone %s: %s command accepted by cloud", zone_id, field)

    def coerce(self, entry: ZoneEntry, field: str, value: Any) -> Any:
        if field == TARGET_TEMPERATURE:
            v = _as_setpoint(value)
            low, high = entry.setpoint_bounds()
            if v < low or v > high:
                raise OutOfRange(v, low, high)
            return v
        if field in (RING_LIGHT, LOCKED):
            return _as_bool(value)
        if field == PRESET:
            label = str(value).strip().lower()
            if label == MODE_OFF or self._referentials().code(MODE_PERMANENT, label) is None:
                raise InvalidCommand(f"unknown preset {value!r}")
            return label
        if field == MODE:
            mode = str(value).strip().lower()
            if mode == MODE_OFF:
                return MODE_OFF
            if mode in (MODE_HEAT, MODE_COOL, "auto"):
                # heat/cool follows the installation, a zone can only be on or off
                cooling = self._reconciler.store.cooling(entry.record.installation_unique)
                return MODE_COOL if cooling else MODE_HEAT
            raise InvalidCommand(f"unknown mode {value!r}")
        raise UnsupportedField(field)

    def cloud_changes(self, entry: ZoneEntry, field: str, value: Any) -> dict[str, Any]:
        refs = self._referentials()
        st = entry.state
        if field == TARGET_TEMPERATURE:
            cooling = self._reconciler.store.cooling(entry.record.installation_unique)
            preset = st.pending_value(PRESET) or st.value(PRESET) or "comfort"
            prefix = "setpoint_c" if cooling else "setpoint_h"
            if preset == "reduced":
                key = f"{prefix}_reduced"
            elif preset == "standby" and not cooling:
                key = "setpoint_h_standby"
            else:
                key = f"{prefix}_normal"
            return {key: celsius_to_raw(value)}
        if field == PRESET:
            return {"mode_permanent": refs.code(MODE_PERMANENT, value)}
        if field == MODE:
            if value == MODE_OFF:
                code = refs.code(MODE_PERMANENT, MODE_OFF)
            else:
                code = refs.code(MODE_PERMANENT, st.value(PRESET) or "comfort")
            if code is None:
                raise InvalidCommand(f"no protocol code for mode {value!r}")
            return {"mode_permanent": code}
        if field == RING_LIGHT:
            return {"cc_config_bits": {"ring_activation": bool(value)}}
        if field == LOCKED:
            return {"cc_config_bits": {"lock": bool(value)}}
        raise UnsupportedField(field)
