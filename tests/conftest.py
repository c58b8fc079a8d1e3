from __future__ import annotations

import copy
from typing import Any

import pytest

from nea_smart_mqtt.app.errors import BusDisconnected
from nea_smart_mqtt.app.mqtt_client import MqttStatus, encode_payload
from nea_smart_mqtt.app.parsers import parse_installation_data, parse_live_data, parse_user_data
from nea_smart_mqtt.app.reconciler import InstallationMode, Update, ZoneSeen
from nea_smart_mqtt.app.referentials import ReferentialTable
from nea_smart_mqtt.app.settings import load_settings
from nea_smart_mqtt.app.zone_store import Source, derive_fields

INSTALL = "INST1"


def raw_channel(
    cid: str,
    *,
    temp: Any = 716,
    setpoint: Any = 716,
    mode: int = 0,
    humidity: Any = 45,
    zone: int = 1,
    controller: int = 0,
    **extra: Any,
) -> dict[str, Any]:
    ch = {
        "_id": cid,
        "channel_zone": zone,
        "controllerNumber": controller,
        "temp_zone": temp,
        "setpoint_used": setpoint,
        "humidity": humidity,
        "dewpoint": 112,
        "mode_permanent": mode,
        "demand": 0,
        "channel_config": {"heating": True, "cooling": False},
        "cc_config_bits": {"ring_activation": False, "lock": False},
        "lowBattery": False,
        "openWindow": False,
        "setpoint_h_normal": 716,
        "setpoint_h_reduced": 644,
    }
    ch.update(extra)
    return ch


def raw_zone(zid: str, *, number: int = 1, name: str = "Living", channels: list[dict] | None = None) -> dict[str, Any]:
    return {
        "_id": zid,
        "number": number,
        "name": name,
        "channels": channels if channels is not None else [raw_channel(f"ch-{zid}", zone=number)],
    }


def raw_install(zones: list[dict], *, unique: str = INSTALL, cooling: bool = False) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "user": {
                "installs": [
                    {
                        "_id": "install-id-1",
                        "unique": unique,
                        "name": "Home",
                        "address": "Main street 1",
                        "version": "1.2.3",
                        "connectionState": True,
                        "outside_temp": 500,
                        "outsideTempFiltered": 510,
                        "user": {"heatcool_auto_01": {"heating": not cooling, "cooling": cooling, "manual": False}},
                        "number_cc": 1,
                        "number_mixed": 0,
                        "groups": [{"_id": "g1", "name": "Ground floor", "zones": zones}],
                    }
                ]
            }
        },
    }


def raw_user(uniques: tuple[str, ...] = (INSTALL,)) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "user": {
                "_id": "user-1",
                "email": "someone@example.com",
                "installs": [{"_id": f"id-{u}", "unique": u, "name": "Home"} for u in uniques],
            }
        },
    }


def poll_items(snap, ts: float) -> list:
    """Reconciler batch for one installation snapshot, as a poll would submit it."""
    refs = ReferentialTable.defaults()
    cooling = snap.operation_mode.cooling
    items: list = [InstallationMode(snap.unique, cooling)]
    for z in snap.zones:
        items.append(ZoneSeen(z, ts))
        fields = derive_fields(z, cooling=cooling, referentials=refs)
        items.extend(Update(z.id, f, v, Source.POLL, ts) for f, v in fields.items())
    return items


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBus:
    def __init__(self, *, connected: bool = True):
        self.connected = connected
        self.published: list[tuple[str, str, bool]] = []
        self.subscriptions: list[str] = []
        self.message_handler = None
        self.connect_handler = None
        self.connect_calls = 0
        self.disconnect_calls = 0

    def status(self) -> MqttStatus:
        return MqttStatus(connected=self.connected, last_error=None)

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None:
        if not self.connected:
            raise BusDisconnected(topic)
        self.published.append((topic, encode_payload(payload), retain))

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        self.subscriptions.append(topic)

    def set_message_handler(self, handler) -> None:
        self.message_handler = handler

    def set_connect_handler(self, handler) -> None:
        self.connect_handler = handler

    def connect(self) -> None:
        self.connect_calls += 1

    def disconnect(self) -> None:
        self.disconnect_calls += 1

    def on(self, topic: str) -> list[str]:
        return [p for t, p, _ in self.published if t == topic]

    def clear(self) -> None:
        self.published.clear()


class FakeCloud:
    """In-memory stand-in for CloudClient, fed with raw cloud payloads."""

    def __init__(self, install_payload: dict[str, Any] | None = None):
        self.install_payload = install_payload or raw_install([raw_zone("z1")])
        self.user_payload = raw_user()
        self.live_payload: dict[str, Any] = {"data": {"mixedCircuits": [], "dido": {"DI": [], "DO": []}}}
        self.referentials = ReferentialTable.defaults()
        self.logins = 0
        self.refreshes = 0
        self.login_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.install_error: Exception | None = None
        self.command_error: Exception | None = None
        self.commands: list[tuple[str, str, dict[str, Any]]] = []
        self.installation_fetches = 0

    async def request_login(self, username: str, password: str) -> dict[str, Any]:
        self.logins += 1
        if self.login_error is not None:
            raise self.login_error
        return {"access_token": f"access-{self.logins}", "refresh_token": f"refresh-{self.logins}", "expires_in": 3600}

    async def request_refresh(self, refresh_token: str) -> dict[str, Any]:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return {"access_token": f"refreshed-{self.refreshes}", "expires_in": 3600}

    async def fetch_user_data(self, session):
        return parse_user_data(self.user_payload)

    async def fetch_installation(self, session, unique: str):
        self.installation_fetches += 1
        if self.install_error is not None:
            raise self.install_error
        return parse_installation_data(copy.deepcopy(self.install_payload), unique)

    async def fetch_live_data(self, session, unique: str):
        return parse_live_data(self.live_payload, unique)

    async def fetch_referentials(self, session):
        return self.referentials

    async def send_channel_command(self, session, unique: str, channel_id: str, changes: dict[str, Any]) -> None:
        self.commands.append((unique, channel_id, changes))
        if self.command_error is not None:
            raise self.command_error


@pytest.fixture
def settings():
    return load_settings(
        {
            "email": "someone@example.com",
            "password": "secret-password",
            "poll_interval_s": 60,
            "optimistic_grace_s": 60,
            "mqtt": {"base_topic": "nea"},
        }
    )
