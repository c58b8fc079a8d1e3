from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ParseError
from .temperature import UNKNOWN, Temperature, decode_temperature

DEFAULT_SETPOINT_MIN_C = 5.0
DEFAULT_SETPOINT_MAX_C = 30.0


def _str(v: Any, default: str = "") -> str:
    return v if isinstance(v, str) else default


def _opt_str(v: Any) -> str | None:
    return v if isinstance(v, str) else None


def _int(v: Any, default: int | None = None) -> int | None:
    if isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    return default


def _num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _bool(v: Any) -> bool:
    return v is True


def _dict(v: Any) -> dict[str, Any]:
    return v if isinstance(v, dict) else {}


def _list(v: Any) -> list[Any]:
    return v if isinstance(v, list) else []


def _dicts(v: Any) -> list[dict[str, Any]]:
    return [x for x in _list(v) if isinstance(x, dict)]


# ----------------------------------------------------------------- user data


@dataclass(frozen=True)
class InstallationInfo:
    id: str
    unique: str
    name: str
    address: str | None
    role: str | None


@dataclass(frozen=True)
class UserData:
    user_id: str
    email: str | None
    name: str | None
    installations: list[InstallationInfo]


def parse_user_data(response: Any) -> UserData:
    r = _dict(response)
    if not isinstance(r.get("success"), bool) or not isinstance(r.get("data"), dict):
        raise ParseError("getUserData: missing success/data")
    if not r["success"]:
        raise ParseError("getUserData: success=false")
    user = r["data"].get("user")
    if not isinstance(user, dict) or not isinstance(user.get("_id"), str):
        raise ParseError("getUserData: missing user")
    installs = user.get("installs")
    if not isinstance(installs, list):
        raise ParseError("getUserData: missing installs")

    infos: list[InstallationInfo] = []
    for inst in installs:
        if not isinstance(inst, dict):
            raise ParseError("getUserData: installation entry is not an object")
        if not all(isinstance(inst.get(k), str) for k in ("_id", "unique", "name")):
            raise ParseError("getUserData: installation without _id/unique/name")
        infos.append(
            InstallationInfo(
                id=inst["_id"],
                unique=inst["unique"],
                name=inst["name"],
                address=_opt_str(inst.get("address")) or None,
                role=_opt_str(_dict(inst.get("association")).get("role")) or None,
            )
        )
    return UserData(
        user_id=user["_id"],
        email=_opt_str(user.get("email")) or None,
        name=_opt_str(user.get("name")) or None,
        installations=infos,
    )


# --------------------------------------------------------- installation data


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    zone_number: int
    controller_number: int | None
    current_temperature: Temperature
    setpoint: Temperature
    humidity: float | None
    dewpoint: float | None
    mode_code: int | None
    demand: float | None
    heating: bool
    cooling: bool
    ring_light: bool
    locked: bool
    low_battery: bool
    open_window: bool
    setpoint_h_normal: Temperature = UNKNOWN
    setpoint_h_reduced: Temperature = UNKNOWN
    setpoint_h_standby: Temperature = UNKNOWN
    setpoint_c_normal: Temperature = UNKNOWN
    setpoint_c_reduced: Temperature = UNKNOWN
    setpoint_min: float = DEFAULT_SETPOINT_MIN_C
    setpoint_max: float = DEFAULT_SETPOINT_MAX_C
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ZoneRecord:
    id: str
    number: int
    name: str
    group_id: str
    group_name: str
    installation_unique: str
    channels: list[ChannelRecord]

    @property
    def channel_ids(self) -> list[str]:
        return [c.id for c in self.channels]


@dataclass(frozen=True)
class ControllerRecord:
    number: int
    unique: str | None
    zone_ids: list[str]


@dataclass(frozen=True)
class OperationMode:
    heating: bool
    cooling: bool
    manual: bool


@dataclass(frozen=True)
class PumpRecord:
    number: int
    on: bool
    ton_s: float | None
    toff_s: float | None


@dataclass(frozen=True)
class MixedCircuitRecord:
    number: int
    setpoint: Temperature
    supply: Temperature
    return_: Temperature
    opening: float | None
    pumps: list[PumpRecord]


@dataclass(frozen=True)
class InstallationSnapshot:
    id: str
    unique: str
    name: str
    address: str | None
    version: str | None
    online: bool
    timezone: str | None
    absence_level: int | None
    geofencing_active: bool
    outside_temperature: Temperature
    outside_temperature_filtered: Temperature
    cooling_conditions: float | None
    operation_mode: OperationMode
    controller_count: int | None
    mixed_circuit_count: int | None
    controllers: list[ControllerRecord]
    zones: list[ZoneRecord]
    mixed_circuits: list[MixedCircuitRecord]
    raw: Any = field(default=None, compare=False, repr=False)

    def zone(self, zone_id: str) -> ZoneRecord | None:
        for z in self.zones:
            if z.id == zone_id:
                return z
        return None


def parse_channel(ch: dict[str, Any]) -> ChannelRecord:
    bits = _dict(ch.get("cc_config_bits"))
    cfg = _dict(ch.get("channel_config"))
    dew = _num(ch.get("dewpoint"))
    low = decode_temperature(ch.get("setpoint_min")).celsius
    high = decode_temperature(ch.get("setpoint_max")).celsius
    return ChannelRecord(
        id=_str(ch.get("_id")),
        zone_number=_int(ch.get("channel_zone"), 0) or 0,
        controller_number=_int(ch.get("controllerNumber")),
        current_temperature=decode_temperature(ch.get("temp_zone")),
        setpoint=decode_temperature(ch.get("setpoint_used")),
        humidity=_num(ch.get("humidity")),
        dewpoint=dew / 10 if dew is not None else None,
        mode_code=_int(ch.get("mode_permanent")),
        demand=_num(ch.get("demand")),
        heating=_bool(cfg.get("heating")),
        cooling=_bool(cfg.get("cooling")),
        ring_light=_bool(bits.get("ring_activation")),
        locked=_bool(bits.get("lock")),
        low_battery=_bool(ch.get("lowBattery")),
        open_window=_bool(ch.get("openWindow")),
        setpoint_h_normal=decode_temperature(ch.get("setpoint_h_normal")),
        setpoint_h_reduced=decode_temperature(ch.get("setpoint_h_reduced")),
        setpoint_h_standby=decode_temperature(ch.get("setpoint_h_standby")),
        setpoint_c_normal=decode_temperature(ch.get("setpoint_c_normal")),
        setpoint_c_reduced=decode_temperature(ch.get("setpoint_c_reduced")),
        setpoint_min=low if low is not None else DEFAULT_SETPOINT_MIN_C,
        setpoint_max=high if high is not None else DEFAULT_SETPOINT_MAX_C,
        raw=ch,
    )


def parse_mixed_circuit(mc: dict[str, Any]) -> MixedCircuitRecord:
    pumps: list[PumpRecord] = []
    for p in _dicts(mc.get("PUMPx")):
        values = _dicts(p.get("values"))
        if not values:
            continue
        v = values[0]
        pumps.append(
            PumpRecord(
                number=_int(p.get("number"), 0) or 0,
                on=_bool(v.get("pumpOn")),
                ton_s=_num(v.get("ton")),
                toff_s=_num(v.get("toff")),
            )
        )
    return MixedCircuitRecord(
        number=_int(mc.get("number"), 0) or 0,
        setpoint=decode_temperature(mc.get("mixed_circuit1_setpoint")),
        supply=decode_temperature(mc.get("mixed_circuit1_supply")),
        return_=decode_temperature(mc.get("mixed_circuit1_return")),
        opening=_num(mc.get("mixed_circuit1_opening")),
        pumps=pumps,
    )


def _installs(response: Any, label: str) -> list[Any]:
    r = _dict(response)
    user = _dict(_dict(r.get("data")).get("user"))
    installs = user.get("installs")
    if not isinstance(installs, list):
        raise ParseError(f"{label}: missing data.user.installs")
    if not installs:
        raise ParseError(f"{label}: no installations in response")
    return installs


def parse_installation_data(response: Any, unique: str | None = None) -> InstallationSnapshot:
    installs = _installs(response, "getDataofInstall")
    if unique:
        found = [i for i in installs if isinstance(i, dict) and i.get("unique") == unique]
        if not found:
            raise ParseError(f"getDataofInstall: installation {unique!r} not found")
        install = found[0]
    else:
        install = installs[0]
        if not isinstance(install, dict):
            raise ParseError("getDataofInstall: installation entry is not an object")

    inst_unique = _str(install.get("unique"))
    heat_cool = _dict(_dict(install.get("user")).get("heatcool_auto_01"))

    controllers = [
        ControllerRecord(
            number=_int(c.get("number"), 0) or 0,
            unique=_opt_str(c.get("unique")),
            zone_ids=[z for z in _list(c.get("zones")) if isinstance(z, str)],
        )
        for c in _dicts(install.get("controllers"))
    ]

    zones: list[ZoneRecord] = []
    for g in _dicts(install.get("groups")):
        for z in _dicts(g.get("zones")):
            zid = _str(z.get("_id"))
            if not zid:
                # no durable identity: cannot be tracked
                continue
            zones.append(
                ZoneRecord(
                    id=zid,
                    number=_int(z.get("number"), 0) or 0,
                    name=_str(z.get("name")),
                    group_id=_str(g.get("_id")),
                    group_name=_str(g.get("name")),
                    installation_unique=inst_unique,
                    channels=[parse_channel(ch) for ch in _dicts(z.get("channels"))],
                )
            )

    return InstallationSnapshot(
        id=_str(install.get("_id")),
        unique=inst_unique,
        name=_str(install.get("name")),
        address=_opt_str(install.get("address")),
        version=_opt_str(install.get("version")),
        online=_bool(install.get("connectionState")),
        timezone=_opt_str(install.get("timezone")),
        absence_level=_int(install.get("absenceLevel")),
        geofencing_active=_bool(install.get("geoInstallActive")),
        outside_temperature=decode_temperature(install.get("outside_temp")),
        outside_temperature_filtered=decode_temperature(install.get("outsideTempFiltered")),
        cooling_conditions=_num(install.get("coolingConditions")),
        operation_mode=OperationMode(
            heating=_bool(heat_cool.get("heating")),
            cooling=_bool(heat_cool.get("cooling")),
            manual=_bool(heat_cool.get("manual")),
        ),
        controller_count=_int(install.get("number_cc")),
        mixed_circuit_count=_int(install.get("number_mixed")),
        controllers=controllers,
        zones=zones,
        mixed_circuits=[parse_mixed_circuit(mc) for mc in _dicts(install.get("mixedCircuits"))],
        raw=response,
    )


def parse_json(text: str, parser, *args: Any):
    try:
        response = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg}") from e
    return parser(response, *args)


# ----------------------------------------------------------------- live data


@dataclass(frozen=True)
class DigitalIO:
    kind: str  # "input" / "output"
    number: int
    name: str
    active: bool


@dataclass(frozen=True)
class LiveSnapshot:
    installation_unique: str
    mixed_circuits: list[MixedCircuitRecord]
    digital_io: list[DigitalIO]


def parse_live_data(response: Any, unique: str) -> LiveSnapshot:
    r = _dict(response)
    data = r.get("data")
    if not isinstance(data, dict):
        raise ParseError("getLiveData: missing data")

    circuits = [parse_mixed_circuit(mc) for mc in _dicts(data.get("mixedCircuits"))]

    dio: list[DigitalIO] = []
    for kind, key in (("input", "DI"), ("output", "DO")):
        for i, entry in enumerate(_list(_dict(data.get("dido")).get(key))):
            if isinstance(entry, bool):
                dio.append(DigitalIO(kind=kind, number=i, name=f"{key}{i}", active=entry))
            elif isinstance(entry, dict):
                n = _int(entry.get("number"), i)
                dio.append(
                    DigitalIO(
                        kind=kind,
                        number=n if n is not None else i,
                        name=_str(entry.get("name")) or f"{key}{i}",
                        active=_bool(entry.get("value")) or _bool(entry.get("active")),
                    )
                )
    return LiveSnapshot(installation_unique=unique, mixed_circuits=circuits, digital_io=dio)


# ------------------------------------------------------------------- summary


def summarize_installation(snap: InstallationSnapshot) -> str:
    lines = [f"Installation: {snap.name} ({snap.unique})"]
    if snap.address:
        lines.append(f"Address: {snap.address}")
    lines.append(f"Connected: {'Yes' if snap.online else 'No'}")
    if snap.version:
        lines.append(f"Version: {snap.version}")
    if snap.outside_temperature.known:
        lines.append(f"Outside Temperature: {snap.outside_temperature.celsius}°C")
    op = snap.operation_mode
    lines.append(f"Operation Mode: Heating={op.heating}, Cooling={op.cooling}")
    lines.append(f"Zones: {len(snap.zones)}")
    for z in snap.zones:
        lines.append(f"  Zone {z.number}: {z.name} [{z.group_name}]")
        for ch in z.channels:
            cur = f"{ch.current_temperature.celsius}°C" if ch.current_temperature.known else "N/A"
            sp = f"{ch.setpoint.celsius}°C" if ch.setpoint.known else "N/A"
            lines.append(f"    Channel {ch.zone_number}: {cur} -> {sp}")
    if snap.mixed_circuits:
        lines.append(f"Mixed Circuits: {len(snap.mixed_circuits)}")
    return "\n".join(lines)
