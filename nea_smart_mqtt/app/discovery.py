from __future__ import annotations

import re
from typing import Any

from .parsers import InstallationSnapshot, ZoneRecord
from .zone_store import (
    CURRENT_TEMPERATURE,
    DEMAND,
    FIELDS,
    HUMIDITY,
    LOCKED,
    LOW_BATTERY,
    MODE,
    OPEN_WINDOW,
    PRESET,
    RING_LIGHT,
    TARGET_TEMPERATURE,
)

MANUFACTURER = "REHAU"
MODEL = "NEA SMART 2.0"


def slugify(text: str) -> str:
    s = text.strip().lower()
    s = re.sub(r"[^a-z0-9_\- ]+", "", s)
    s = re.sub(r"[\s\-]+", "_", s)
    return s or "installation"


def node_id(installation_unique: str) -> str:
    return f"nea_smart_{slugify(installation_unique)}"


def bridge_availability_topic(base_topic: str) -> str:
    return f"{base_topic}/availability"


def zone_topic(base_topic: str, zone_id: str, field: str) -> str:
    return f"{base_topic}/zones/{zone_id}/{field}"


def zone_availability_topic(base_topic: str, zone_id: str) -> str:
    return zone_topic(base_topic, zone_id, "availability")


def zone_attributes_topic(base_topic: str, zone_id: str) -> str:
    return zone_topic(base_topic, zone_id, "attributes")


def command_topic(base_topic: str, zone_id: str, field: str) -> str:
    return f"{zone_topic(base_topic, zone_id, field)}/set"


def installation_topic(base_topic: str, unique: str, sensor: str) -> str:
    return f"{base_topic}/installations/{unique}/{sensor}"


def _availability(base_topic: str, zone_id: str | None = None) -> dict[str, Any]:
    entries = [{"topic": bridge_availability_topic(base_topic)}]
    if zone_id is not None:
        entries.append({"topic": zone_availability_topic(base_topic, zone_id)})
    return {
        "availability": entries,
        "availability_mode": "all",
        "payload_available": "online",
        "payload_not_available": "offline",
    }


def _zone_device(zone: ZoneRecord) -> dict[str, Any]:
    name = zone.name or f"Zone {zone.number}"
    return {
        # zone _id, never controller/zone numbers, which repeat across controllers
        "identifiers": [f"nea_smart:zone:{zone.id}"],
        "name": f"{zone.group_name} {name}".strip() if zone.group_name else name,
        "manufacturer": MANUFACTURER,
        "model": MODEL,
        "via_device": f"nea_smart:installation:{zone.installation_unique}",
    }


def _installation_device(snap: InstallationSnapshot) -> dict[str, Any]:
    device: dict[str, Any] = {
        "identifiers": [f"nea_smart:installation:{snap.unique}"],
        "name": snap.name or f"NEA SMART {snap.unique}",
        "manufacturer": MANUFACTURER,
        "model": MODEL,
    }
    if snap.version:
        device["sw_version"] = snap.version
    return device


def climate_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    zone: ZoneRecord,
    preset_modes: list[str],
    min_temp: float,
    max_temp: float,
) -> tuple[str, dict[str, Any]]:
    nid = node_id(zone.installation_unique)
    zid = zone.id
    chans = zone.channels
    modes = ["off"]
    if not chans or any(c.heating for c in chans):
        modes.append("heat")
    if any(c.cooling for c in chans):
        modes.append("cool")

    payload: dict[str, Any] = {
        "name": None,
        "unique_id": f"{nid}_{zid}_climate",
        "object_id": f"{nid}_{slugify(zone.name or str(zone.number))}",
        "current_temperature_topic": zone_topic(base_topic, zid, CURRENT_TEMPERATURE),
        "current_humidity_topic": zone_topic(base_topic, zid, HUMIDITY),
        "temperature_state_topic": zone_topic(base_topic, zid, TARGET_TEMPERATURE),
        "temperature_command_topic": command_topic(base_topic, zid, TARGET_TEMPERATURE),
        "mode_state_topic": zone_topic(base_topic, zid, MODE),
        "mode_command_topic": command_topic(base_topic, zid, MODE),
        "modes": modes,
        "min_temp": min_temp,
        "max_temp": max_temp,
        "temp_step": 0.5,
        "precision": 0.1,
        "temperature_unit": "C",
        "json_attributes_topic": zone_attributes_topic(base_topic, zid),
        "device": _zone_device(zone),
        **_availability(base_topic, zid),
    }
    if preset_modes:
        payload["preset_mode_state_topic"] = zone_topic(base_topic, zid, PRESET)
        payload["preset_mode_command_topic"] = command_topic(base_topic, zid, PRESET)
        payload["preset_modes"] = list(preset_modes)

    topic = f"{discovery_prefix}/climate/{nid}/{zid}/config"
    return topic, payload


_ZONE_SENSORS: dict[str, dict[str, Any]] = {
    HUMIDITY: {"name": "Humidity", "device_class": "humidity", "unit_of_measurement": "%", "state_class": "measurement"},
    DEMAND: {"name": "Demand", "unit_of_measurement": "%", "state_class": "measurement", "icon": "mdi:radiator"},
}

_ZONE_BINARY_SENSORS: dict[str, dict[str, Any]] = {
    LOW_BATTERY: {"name": "Battery", "device_class": "battery", "entity_category": "diagnostic"},
    OPEN_WINDOW: {"name": "Window", "device_class": "window"},
}

_ZONE_SWITCHES: dict[str, dict[str, Any]] = {
    RING_LIGHT: {"name": "Ring light", "icon": "mdi:lightbulb-outline", "entity_category": "config"},
    LOCKED: {"name": "Child lock", "icon": "mdi:lock", "entity_category": "config"},
}


def zone_entity_discovery(*, discovery_prefix: str, base_topic: str, zone: ZoneRecord) -> list[tuple[str, dict[str, Any]]]:
    """Auxiliary sensor, binary_sensor and switch entities for one zone."""
    nid = node_id(zone.installation_unique)
    zid = zone.id
    device = _zone_device(zone)
    out: list[tuple[str, dict[str, Any]]] = []

    for field, extra in _ZONE_SENSORS.items():
        payload = {
            **extra,
            "unique_id": f"{nid}_{zid}_{field}",
            "state_topic": zone_topic(base_topic, zid, field),
            "device": device,
            **_availability(base_topic, zid),
        }
        out.append((f"{discovery_prefix}/sensor/{nid}/{zid}_{field}/config", payload))

    for field, extra in _ZONE_BINARY_SENSORS.items():
        payload = {
            **extra,
            "unique_id": f"{nid}_{zid}_{field}",
            "state_topic": zone_topic(base_topic, zid, field),
            "payload_on": "ON",
            "payload_off": "OFF",
            "device": device,
            **_availability(base_topic, zid),
        }
        out.append((f"{discovery_prefix}/binary_sensor/{nid}/{zid}_{field}/config", payload))

    for field, extra in _ZONE_SWITCHES.items():
        payload = {
            **extra,
            "unique_id": f"{nid}_{zid}_{field}",
            "state_topic": zone_topic(base_topic, zid, field),
            "command_topic": command_topic(base_topic, zid, field),
            "payload_on": "ON",
            "payload_off": "OFF",
            "device": device,
            **_availability(base_topic, zid),
        }
        out.append((f"{discovery_prefix}/switch/{nid}/{zid}_{field}/config", payload))

    return out


def zone_discovery_topics(*, discovery_prefix: str, installation_unique: str, zone_id: str) -> list[str]:
    nid = node_id(installation_unique)
    topics = [f"{discovery_prefix}/climate/{nid}/{zone_id}/config"]
    for field in _ZONE_SENSORS:
        topics.append(f"{discovery_prefix}/sensor/{nid}/{zone_id}_{field}/config")
    for field in _ZONE_BINARY_SENSORS:
        topics.append(f"{discovery_prefix}/binary_sensor/{nid}/{zone_id}_{field}/config")
    for field in _ZONE_SWITCHES:
        topics.append(f"{discovery_prefix}/switch/{nid}/{zone_id}_{field}/config")
    return topics


def zone_state_topics(base_topic: str, zone_id: str) -> list[str]:
    topics = [zone_topic(base_topic, zone_id, f) for f in FIELDS]
    topics.append(zone_availability_topic(base_topic, zone_id))
    topics.append(zone_attributes_topic(base_topic, zone_id))
    return topics


OUTSIDE_TEMPERATURE = "outside_temperature"
OUTSIDE_TEMPERATURE_FILTERED = "outside_temperature_filtered"
ONLINE = "online"
OPERATION_MODE = "operation_mode"


def installation_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    snap: InstallationSnapshot,
) -> list[tuple[str, dict[str, Any]]]:
    nid = node_id(snap.unique)
    device = _installation_device(snap)
    avail = _availability(base_topic)
    out: list[tuple[str, dict[str, Any]]] = []

    for sensor, name in ((OUTSIDE_TEMPERATURE, "Outside temperature"), (OUTSIDE_TEMPERATURE_FILTERED, "Outside temperature filtered")):
        payload = {
            "name": name,
            "unique_id": f"{nid}_{sensor}",
            "state_topic": installation_topic(base_topic, snap.unique, sensor),
            "device_class": "temperature",
            "unit_of_measurement": "°C",
            "state_class": "measurement",
            "device": device,
            **avail,
        }
        out.append((f"{discovery_prefix}/sensor/{nid}/{sensor}/config", payload))

    out.append(
        (
            f"{discovery_prefix}/sensor/{nid}/{OPERATION_MODE}/config",
            {
                "name": "Operation mode",
                "unique_id": f"{nid}_{OPERATION_MODE}",
                "state_topic": installation_topic(base_topic, snap.unique, OPERATION_MODE),
                "icon": "mdi:sun-snowflake-variant",
                "device": device,
                **avail,
            },
        )
    )
    out.append(
        (
            f"{discovery_prefix}/binary_sensor/{nid}/{ONLINE}/config",
            {
                "name": "Cloud connection",
                "unique_id": f"{nid}_{ONLINE}",
                "state_topic": installation_topic(base_topic, snap.unique, ONLINE),
                "device_class": "connectivity",
                "entity_category": "diagnostic",
                "payload_on": "ON",
                "payload_off": "OFF",
                "device": device,
                **avail,
            },
        )
    )
    return out


def live_sensor_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    snap: InstallationSnapshot,
    sensor: str,
    name: str,
    binary: bool = False,
    temperature: bool = False,
) -> tuple[str, dict[str, Any]]:
    """One mixed-circuit or digital I/O entity from the live data endpoint."""
    nid = node_id(snap.unique)
    payload: dict[str, Any] = {
        "name": name,
        "unique_id": f"{nid}_{sensor}",
        "state_topic": installation_topic(base_topic, snap.unique, sensor),
        "entity_category": "diagnostic",
        "device": _installation_device(snap),
        **_availability(base_topic),
    }
    if binary:
        payload["payload_on"] = "ON"
        payload["payload_off"] = "OFF"
        component = "binary_sensor"
    else:
        component = "sensor"
        if temperature:
            payload["device_class"] = "temperature"
            payload["unit_of_measurement"] = "°C"
            payload["state_class"] = "measurement"
        else:
            payload["unit_of_measurement"] = "%"
    return f"{discovery_prefix}/{component}/{nid}/{sensor}/config", payload
