from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import signal
import time
from dataclasses import replace
from typing import Any, Callable, Protocol

from .cloud_client import CloudClient
from .commands import CommandTranslator, parse_command
from .discovery import (
    OPERATION_MODE,
    ONLINE,
    OUTSIDE_TEMPERATURE,
    OUTSIDE_TEMPERATURE_FILTERED,
    bridge_availability_topic,
    climate_discovery,
    installation_discovery,
    installation_topic,
    live_sensor_discovery,
    zone_attributes_topic,
    zone_availability_topic,
    zone_discovery_topics,
    zone_entity_discovery,
    zone_state_topics,
    zone_topic,
)
from .errors import BridgeError, BusDisconnected, ParseError
from .mqtt_client import MqttClient, MqttStatus
from .parsers import InstallationSnapshot, LiveSnapshot, ZoneRecord, parse_channel, summarize_installation
from .reconciler import (
    AVAILABILITY,
    CONFIG,
    DISCOVERED,
    REMOVED,
    Change,
    InstallationMode,
    Item,
    Reconciler,
    Update,
    ZoneMissed,
    ZoneSeen,
)
from .referentials import MODE_PERMANENT, ReferentialTable
from .scheduler import BridgeScheduler
from .session import Credentials, SessionManager
from .settings import Settings
from .zone_store import (
    CURRENT_TEMPERATURE,
    DEMAND,
    HUMIDITY,
    LOCKED,
    LOW_BATTERY,
    MODE,
    MODE_OFF,
    OPEN_WINDOW,
    PRESET,
    RING_LIGHT,
    TARGET_TEMPERATURE,
    Source,
    ZoneEntry,
    ZoneStateStore,
    derive_fields,
)

_LOGGER = logging.getLogger("nea_bridge")

SWEEP_INTERVAL_S = 1.0
DRAIN_TIMEOUT_S = 10.0

# raw channel keys a push must carry for each derived field
_PUSH_KEYS: dict[str, tuple[str, ...]] = {
    TARGET_TEMPERATURE: ("setpoint_used",),
    CURRENT_TEMPERATURE: ("temp_zone",),
    HUMIDITY: ("humidity",),
    DEMAND: ("demand",),
    MODE: ("mode_permanent",),
    PRESET: ("mode_permanent",),
    RING_LIGHT: ("cc_config_bits",),
    LOCKED: ("cc_config_bits",),
    LOW_BATTERY: ("lowBattery",),
    OPEN_WINDOW: ("openWindow",),
}


class Bus(Protocol):
    @property
    def connected(self) -> bool: ...

    def status(self) -> MqttStatus: ...

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None: ...

    def subscribe(self, topic: str, *, qos: int = 0) -> None: ...

    def set_message_handler(self, handler: Callable[[str, str], None] | None) -> None: ...

    def set_connect_handler(self, handler: Callable[[], None] | None) -> None: ...

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "ON" if value else "OFF"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def zone_attributes(record: ZoneRecord) -> dict[str, Any]:
    return {
        "zone_id": record.id,
        "zone_number": record.number,
        "group": record.group_name,
        "installation": record.installation_unique,
        "channels": [
            {
                "id": c.id,
                "controller": c.controller_number,
                "channel_zone": c.zone_number,
                "heating": c.heating,
                "cooling": c.cooling,
                "setpoint_min": c.setpoint_min,
                "setpoint_max": c.setpoint_max,
            }
            for c in record.channels
        ],
    }


def _send_sigterm() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


def _log_callback_failure(fut: concurrent.futures.Future) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        _LOGGER.error("MQTT callback handling failed: %s", exc, exc_info=exc)


class Bridge:
    """Wires the cloud side, the reconciler and the MQTT side together."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: CloudClient | None = None,
        bus: Bus | None = None,
        clock: Callable[[], float] = time.monotonic,
        exit_process: Callable[[], None] = _send_sigterm,
    ):
        self.settings = settings
        self._base = settings.mqtt.base_topic
        self._prefix = settings.mqtt.discovery_prefix
        self.client = client or CloudClient(api_base=settings.cloud.api_base, email=settings.cloud.email)
        self.bus: Bus = bus or MqttClient(
            host=settings.mqtt.host,
            port=settings.mqtt.port,
            username=settings.mqtt.username,
            password=settings.mqtt.password,
            client_id=settings.mqtt.client_id,
            will_topic=bridge_availability_topic(settings.mqtt.base_topic),
        )
        self.sessions = SessionManager(
            self.client,
            Credentials(username=settings.cloud.email, password=settings.cloud.password),
            clock=clock,
        )
        self.store = ZoneStateStore()
        self.reconciler = Reconciler(
            self.store,
            grace_s=settings.optimistic_grace_s,
            removal_misses=settings.zone_removal_misses,
            clock=clock,
            on_changes=self._publish_changes,
        )
        self.referentials = ReferentialTable.defaults()
        self.commands = CommandTranslator(self.reconciler, self.client, self.sessions, lambda: self.referentials)
        self.scheduler = BridgeScheduler(on_fatal=self._on_fatal)
        self._exit_process = exit_process

        self._loop: asyncio.AbstractEventLoop | None = None
        self._installations: dict[str, InstallationSnapshot] = {}
        self._summarized: set[str] = set()
        self._zone_records: dict[str, ZoneRecord] = {}
        self._sensor_cache: dict[str, str] = {}
        self._live_discovered: set[str] = set()
        self._stopping = False

        self.poll_count = 0
        self.last_poll_at: float | None = None
        self.last_poll_error: str | None = None
        self.fatal_error: str | None = None
        self.publish_count = 0

        intervals = settings.intervals
        self.scheduler.add("poll", intervals.poll_s, self.poll)
        self.scheduler.add("live_data", intervals.live_data_s, self.poll_live_data, condition=lambda: self.bus.connected)
        self.scheduler.add("referentials", intervals.referentials_s, self.reload_referentials)
        self.scheduler.add("token_refresh", intervals.token_refresh_s, self.sessions.scheduled_refresh, run_at_start=False)
        self.scheduler.add("pending_sweep", SWEEP_INTERVAL_S, self.sweep_pending, run_at_start=False)

    @property
    def installations(self) -> dict[str, InstallationSnapshot]:
        return dict(self._installations)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.reconciler.start()
        self.bus.set_message_handler(self._on_bus_message)
        self.bus.set_connect_handler(self._on_bus_connect)
        self.bus.subscribe(f"{self._base}/zones/+/+/set")
        self.bus.subscribe(f"{self._base}/push/channel/+")
        _LOGGER.info("Starting MQTT client %s:%s", self.settings.mqtt.host, self.settings.mqtt.port)
        self.bus.connect()
        self.scheduler.start()

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        _LOGGER.info("Stopping bridge")
        self.commands.close()
        # a poll already talking to the cloud finishes and is still applied
        await self.scheduler.stop(timeout=DRAIN_TIMEOUT_S)
        try:
            await asyncio.wait_for(self.commands.drain(), DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            _LOGGER.warning("Cloud commands still in flight at shutdown")
        await self.reconciler.stop()
        try:
            self._publish(bridge_availability_topic(self._base), "offline")
        except BusDisconnected:
            pass
        finally:
            self.bus.disconnect()

    def _on_fatal(self, exc: BaseException) -> None:
        # several timers can hit the same rejected login
        if self.fatal_error is not None:
            return
        self.fatal_error = str(exc)
        _LOGGER.error("Cloud credentials rejected, bridge cannot continue: %s", exc)
        loop = self._loop or asyncio.get_running_loop()
        loop.create_task(self._fatal_shutdown())

    async def _fatal_shutdown(self) -> None:
        try:
            await self.stop()
        finally:
            self._exit_process()

    # -------------------------------------------------------------- timers

    async def poll(self) -> None:
        started = self.reconciler.now()
        try:
            user = await self.sessions.call(self.client.fetch_user_data)
            wanted = self.settings.cloud.installation
            uniques = [
                i.unique for i in user.installations if not wanted or wanted in (i.unique, i.id, i.name)
            ]
            if wanted and not uniques:
                raise ParseError(f"installation {wanted!r} not found for this account")

            for unique in list(self._installations):
                if unique not in uniques:
                    _LOGGER.warning("Installation %s no longer listed", unique)
                    self._installations.pop(unique, None)
            # zones of a delisted installation miss every poll until removed
            orphans = [e.zone_id for e in self.store if e.record.installation_unique not in uniques]
            if orphans:
                await self.reconciler.submit([ZoneMissed(zid, started) for zid in orphans])

            failed: BridgeError | None = None
            for unique in uniques:
                try:
                    await self._poll_installation(unique, started)
                except BridgeError as e:
                    # other installations still get their update
                    _LOGGER.warning("Poll of installation %s failed: %s", unique, e)
                    failed = e
            if failed is not None:
                raise failed
        except BridgeError as e:
            self.last_poll_error = str(e)
            raise
        self.poll_count += 1
        self.last_poll_at = time.time()
        self.last_poll_error = None

    async def _poll_installation(self, unique: str, started: float) -> None:
        snap = await self.sessions.call(lambda s: self.client.fetch_installation(s, unique))
        self._installations[unique] = snap
        if unique not in self._summarized:
            self._summarized.add(unique)
            _LOGGER.info("%s", summarize_installation(snap))

        items = self.snapshot_items(snap, started)
        await self.reconciler.submit(items)
        self._publish_installation(snap)

    def snapshot_items(self, snap: InstallationSnapshot, timestamp: float) -> list[Item]:
        """Turn one installation snapshot into a reconciler batch."""
        cooling = snap.operation_mode.cooling
        items: list[Item] = [InstallationMode(snap.unique, cooling)]
        seen: set[str] = set()
        for zone in snap.zones:
            if zone.id in seen:
                _LOGGER.warning("Zone %s listed twice in installation %s, keeping the first", zone.id, snap.unique)
                continue
            try:
                fields = derive_fields(zone, cooling=cooling, referentials=self.referentials)
            except Exception:
                _LOGGER.exception("Zone %s: cannot derive state, skipping this cycle", zone.id)
                fields = None
            seen.add(zone.id)
            items.append(ZoneSeen(zone, timestamp))
            if fields:
                items.extend(Update(zone.id, f, v, Source.POLL, timestamp) for f, v in fields.items())
        for zid in self.store.zone_ids(snap.unique):
            if zid not in seen:
                items.append(ZoneMissed(zid, timestamp))
        return items

    async def poll_live_data(self) -> None:
        for unique, snap in list(self._installations.items()):
            live = await self.sessions.call(lambda s, u=unique: self.client.fetch_live_data(s, u))
            self._publish_live(snap, live)

    async def reload_referentials(self) -> None:
        table = await self.sessions.call(self.client.fetch_referentials)
        self.referentials = table
        _LOGGER.info("Loaded %d referential categories (version %s)", len(table), table.version or "-")

    async def sweep_pending(self) -> None:
        await self.reconciler.submit(())

    # ---------------------------------------------------------------- push

    def _zone_for_channel(self, channel_id: str) -> ZoneEntry | None:
        for entry in self.store:
            if channel_id in entry.record.channel_ids:
                return entry
        return None

    async def submit_push(self, channel_id: str, raw: dict[str, Any]) -> None:
        """Apply raw channel fields pushed by the realtime relay."""
        entry = self._zone_for_channel(channel_id)
        if entry is None:
            _LOGGER.debug("Push for unknown channel %s ignored", channel_id)
            return
        ts = self.reconciler.now()
        channels = []
        for ch in entry.record.channels:
            if ch.id == channel_id:
                ch = parse_channel({**ch.raw, **raw, "_id": channel_id})
            channels.append(ch)
        record = replace(entry.record, channels=channels)
        cooling = self.store.cooling(record.installation_unique)
        fields = derive_fields(record, cooling=cooling, referentials=self.referentials)
        items = [
            Update(record.id, name, value, Source.PUSH, ts)
            for name, value in fields.items()
            if any(k in raw for k in _PUSH_KEYS.get(name, ()))
        ]
        if items:
            await self.reconciler.submit(items)

    # ---------------------------------------------------------- bus inbound

    def _on_bus_message(self, topic: str, payload: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        fut = asyncio.run_coroutine_threadsafe(self.handle_message(topic, payload), loop)
        fut.add_done_callback(_log_callback_failure)

    def _on_bus_connect(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        # broker restarts can drop retained messages; republish everything
        fut = asyncio.run_coroutine_threadsafe(self.republish_all(), loop)
        fut.add_done_callback(_log_callback_failure)

    async def handle_message(self, topic: str, payload: str) -> None:
        push_prefix = f"{self._base}/push/channel/"
        if topic.startswith(push_prefix):
            channel_id = topic[len(push_prefix) :]
            try:
                raw = json.loads(payload)
            except json.JSONDecodeError:
                _LOGGER.warning("Push for channel %s is not JSON", channel_id)
                return
            if isinstance(raw, dict) and isinstance(raw.get("data"), dict):
                raw = raw["data"]
            if not channel_id or not isinstance(raw, dict):
                _LOGGER.warning("Malformed push on %s", topic)
                return
            await self.submit_push(channel_id, raw)
            return

        cmd = parse_command(self._base, topic, payload)
        if cmd is None:
            _LOGGER.debug("Ignoring message on %s", topic)
            return
        try:
            await self.commands.handle_command(cmd.zone_id, cmd.field, cmd.value)
        except BridgeError as e:
            _LOGGER.warning("Command %s=%r for zone %s rejected: %s", cmd.field, cmd.value, cmd.zone_id, e)

    # ------------------------------------------------------------- publish

    def _publish(self, topic: str, payload: Any, *, retain: bool = True) -> None:
        self.bus.publish(topic, payload, retain=retain)
        self.publish_count += 1

    def _publish_changes(self, changes: list[Change]) -> None:
        try:
            for ch in changes:
                self._publish_change(ch)
        except BusDisconnected:
            # nothing is queued; the reconnect republishes the whole state
            _LOGGER.debug("MQTT down, %d change(s) not published", len(changes))

    def _publish_change(self, ch: Change) -> None:
        if ch.field == REMOVED:
            self._clear_zone(ch.zone_id)
            return
        entry = self.store.get(ch.zone_id)
        if ch.field in (DISCOVERED, CONFIG):
            if entry is not None:
                self._publish_zone_config(entry)
            return
        if ch.field == AVAILABILITY:
            self._publish(zone_availability_topic(self._base, ch.zone_id), "online" if ch.value else "offline")
            return
        self._publish(zone_topic(self._base, ch.zone_id, ch.field), format_value(ch.value))

    def _preset_modes(self) -> list[str]:
        return [p for p in self.referentials.labels(MODE_PERMANENT) if p != MODE_OFF]

    def _publish_zone_config(self, entry: ZoneEntry) -> None:
        record = entry.record
        self._zone_records[record.id] = record
        low, high = entry.setpoint_bounds()
        topic, payload = climate_discovery(
            discovery_prefix=self._prefix,
            base_topic=self._base,
            zone=record,
            preset_modes=self._preset_modes(),
            min_temp=low,
            max_temp=high,
        )
        self._publish(topic, payload)
        for t, p in zone_entity_discovery(discovery_prefix=self._prefix, base_topic=self._base, zone=record):
            self._publish(t, p)
        self._publish(zone_attributes_topic(self._base, record.id), zone_attributes(record))
        self._publish(zone_availability_topic(self._base, record.id), "online" if entry.state.available else "offline")

    def _clear_zone(self, zone_id: str) -> None:
        record = self._zone_records.pop(zone_id, None)
        if record is not None:
            for t in zone_discovery_topics(
                discovery_prefix=self._prefix, installation_unique=record.installation_unique, zone_id=zone_id
            ):
                self._publish(t, "")
        for t in zone_state_topics(self._base, zone_id):
            self._publish(t, "")

    def _publish_sensor(self, topic: str, value: Any) -> None:
        payload = format_value(value)
        if self._sensor_cache.get(topic) == payload:
            return
        self._publish(topic, payload)
        self._sensor_cache[topic] = payload

    def _publish_installation(self, snap: InstallationSnapshot) -> None:
        try:
            key = f"discovery:{snap.unique}"
            if key not in self._sensor_cache:
                for t, p in installation_discovery(discovery_prefix=self._prefix, base_topic=self._base, snap=snap):
                    self._publish(t, p)
                self._sensor_cache[key] = "1"
            op = snap.operation_mode
            self._publish_sensor(installation_topic(self._base, snap.unique, OUTSIDE_TEMPERATURE), snap.outside_temperature.celsius)
            self._publish_sensor(
                installation_topic(self._base, snap.unique, OUTSIDE_TEMPERATURE_FILTERED),
                snap.outside_temperature_filtered.celsius,
            )
            self._publish_sensor(
                installation_topic(self._base, snap.unique, OPERATION_MODE),
                "manual" if op.manual else ("cooling" if op.cooling else "heating"),
            )
            self._publish_sensor(installation_topic(self._base, snap.unique, ONLINE), snap.online)
        except BusDisconnected:
            _LOGGER.debug("MQTT down, installation sensors for %s not published", snap.unique)

    def _publish_live(self, snap: InstallationSnapshot, live: LiveSnapshot) -> None:
        sensors: list[tuple[str, str, Any, bool, bool]] = []
        for mc in live.mixed_circuits:
            n = mc.number
            sensors.append((f"mixed_circuit_{n}_setpoint", f"Mixed circuit {n} setpoint", mc.setpoint.celsius, False, True))
            sensors.append((f"mixed_circuit_{n}_supply", f"Mixed circuit {n} supply", mc.supply.celsius, False, True))
            sensors.append((f"mixed_circuit_{n}_return", f"Mixed circuit {n} return", mc.return_.celsius, False, True))
            sensors.append((f"mixed_circuit_{n}_opening", f"Mixed circuit {n} valve opening", mc.opening, False, False))
            for p in mc.pumps:
                sensors.append((f"mixed_circuit_{n}_pump_{p.number}", f"Mixed circuit {n} pump {p.number}", p.on, True, False))
        for io in live.digital_io:
            prefix = "di" if io.kind == "input" else "do"
            sensors.append((f"{prefix}_{io.number}", io.name, io.active, True, False))

        try:
            for sensor, name, value, binary, temperature in sensors:
                topic = installation_topic(self._base, snap.unique, sensor)
                if topic not in self._live_discovered:
                    t, p = live_sensor_discovery(
                        discovery_prefix=self._prefix,
                        base_topic=self._base,
                        snap=snap,
                        sensor=sensor,
                        name=name,
                        binary=binary,
                        temperature=temperature,
                    )
                    self._publish(t, p)
                    self._live_discovered.add(topic)
                self._publish_sensor(topic, value)
        except BusDisconnected:
            _LOGGER.debug("MQTT down, live data for %s not published", snap.unique)

    async def republish_all(self) -> None:
        """Full idempotent republish after a (re)connect."""
        self._sensor_cache.clear()
        self._live_discovered.clear()
        try:
            self._publish(bridge_availability_topic(self._base), "online")
            for snap in list(self._installations.values()):
                self._publish_installation(snap)
            for entry in self.store:
                self._publish_zone_config(entry)
                for name, value in entry.state.values().items():
                    self._publish(zone_topic(self._base, entry.zone_id, name), format_value(value))
        except BusDisconnected:
            _LOGGER.debug("MQTT dropped again during republish")
            return
        _LOGGER.info("Republished state for %d zone(s)", len(self.store))

    # -------------------------------------------------------------- status

    def status(self) -> dict[str, Any]:
        mqtt = self.bus.status()
        return {
            "mqtt": {"connected": mqtt.connected, "last_error": mqtt.last_error},
            "session": self.sessions.state.value,
            "installations": sorted(self._installations),
            "zones": len(self.store),
            "poll_count": self.poll_count,
            "last_poll_at": self.last_poll_at,
            "last_poll_error": self.last_poll_error,
            "fatal_error": self.fatal_error,
            "referentials_version": self.referentials.version,
            "timers": [
                {"name": j.name, "interval_s": j.interval_s, "runs": j.runs, "failures": j.failures, "last_error": j.last_error}
                for j in self.scheduler.jobs()
            ],
            "accepting_commands": self.commands.accepting,
        }

    def zones(self) -> list[dict[str, Any]]:
        out = []
        for zid in sorted(self.store.zone_ids()):
            snap = self.store.snapshot(zid)
            if snap is not None:
                out.append(snap)
        return out
