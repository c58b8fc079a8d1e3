from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

DEFAULT_API_BASE = "https://api.nea2aws.aws.rehau.cloud"


@dataclass(frozen=True)
class CloudConfig:
    email: str
    password: str
    installation: str
    api_base: str


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    base_topic: str
    discovery_prefix: str
    client_id: str


@dataclass(frozen=True)
class Intervals:
    poll_s: float
    live_data_s: float
    referentials_s: float
    token_refresh_s: float


@dataclass(frozen=True)
class Settings:
    cloud: CloudConfig
    mqtt: MqttConfig
    intervals: Intervals
    optimistic_grace_s: float
    zone_removal_misses: int
    api_port: int
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("NEA_SMART_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def load_settings(options: dict[str, Any]) -> Settings:
    def _read_float(key: str, default: float) -> float:
        try:
            v = options.get(key)
            if v is None or v == "":
                return float(default)
            return float(v)
        except (TypeError, ValueError):
            return float(default)

    def _read_int(key: str, default: int) -> int:
        try:
            v = options.get(key)
            if v is None or v == "":
                return int(default)
            return int(v)
        except (TypeError, ValueError):
            return int(default)

    cloud = CloudConfig(
        email=str(options.get("email") or os.environ.get("NEA_SMART_EMAIL") or ""),
        password=str(options.get("password") or os.environ.get("NEA_SMART_PASSWORD") or ""),
        installation=str(options.get("installation") or "").strip(),
        api_base=str(options.get("api_base") or DEFAULT_API_BASE).rstrip("/"),
    )

    mqtt_raw = options.get("mqtt") or {}
    if not isinstance(mqtt_raw, dict):
        mqtt_raw = {}
    mqtt = MqttConfig(
        host=str(mqtt_raw.get("host") or "core-mosquitto"),
        port=int(mqtt_raw.get("port") or 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "nea_smart").rstrip("/"),
        discovery_prefix=str(mqtt_raw.get("discovery_prefix") or "homeassistant").rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "nea-smart-bridge"),
    )

    # Zero disables a timer, except the poll which always runs.
    poll_s = max(10.0, _read_float("poll_interval_s", 300.0))
    intervals = Intervals(
        poll_s=poll_s,
        live_data_s=max(0.0, _read_float("live_data_interval_s", 300.0)),
        referentials_s=max(0.0, _read_float("referentials_reload_interval_s", 86400.0)),
        token_refresh_s=max(0.0, _read_float("token_refresh_interval_s", 21600.0)),
    )

    return Settings(
        cloud=cloud,
        mqtt=mqtt,
        intervals=intervals,
        optimistic_grace_s=max(1.0, _read_float("optimistic_grace_s", poll_s)),
        zone_removal_misses=max(1, _read_int("zone_removal_misses", 3)),
        api_port=_read_int("api_port", 8124),
        debug=bool(options.get("debug") or False),
    )
