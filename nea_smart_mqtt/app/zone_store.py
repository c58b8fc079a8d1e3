from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterator

from .parsers import ChannelRecord, ZoneRecord
from .referentials import MODE_PERMANENT, ReferentialTable

TARGET_TEMPERATURE = "target_temperature"
CURRENT_TEMPERATURE = "current_temperature"
HUMIDITY = "humidity"
MODE = "mode"
PRESET = "preset"
RING_LIGHT = "ring_light"
LOCKED = "locked"
LOW_BATTERY = "low_battery"
OPEN_WINDOW = "open_window"
DEMAND = "demand"

FIELDS = (
    TARGET_TEMPERATURE,
    CURRENT_TEMPERATURE,
    HUMIDITY,
    MODE,
    PRESET,
    RING_LIGHT,
    LOCKED,
    LOW_BATTERY,
    OPEN_WINDOW,
    DEMAND,
)
MUTABLE_FIELDS = frozenset({TARGET_TEMPERATURE, MODE, PRESET, RING_LIGHT, LOCKED})
FLAG_FIELDS = frozenset({RING_LIGHT, LOCKED, LOW_BATTERY, OPEN_WINDOW})

MODE_OFF = "off"
MODE_HEAT = "heat"
MODE_COOL = "cool"


class Source(str, enum.Enum):
    POLL = "poll"
    PUSH = "push"
    COMMAND = "command"
    REJECT = "reject"


@dataclass(frozen=True)
class FieldValue:
    value: Any
    source: Source
    timestamp: float


@dataclass
class PendingWrite:
    """Optimistic value waiting for cloud confirmation."""

    value: Any
    previous: FieldValue | None
    issued_at: float
    grace_s: float
    disagree_value: Any = None
    disagree_count: int = 0
    disagree_polls: int = 0
    disagree_pushed: bool = False
    disagree_at: float | None = None

    def expired(self, now: float) -> bool:
        return now - self.issued_at >= self.grace_s

    def reset_disagreement(self) -> None:
        self.disagree_value = None
        self.disagree_count = 0
        self.disagree_polls = 0
        self.disagree_pushed = False
        self.disagree_at = None


@dataclass
class ClimateState:
    zone_id: str
    fields: dict[str, FieldValue] = field(default_factory=dict)
    pending: dict[str, PendingWrite] = field(default_factory=dict)
    # value shown before an optimistic write whose grace ran out unconfirmed
    unconfirmed: dict[str, FieldValue | None] = field(default_factory=dict)
    last_seen: dict[str, dict[Source, float]] = field(default_factory=dict)
    available: bool = True
    misses: int = 0

    def value(self, name: str) -> Any:
        fv = self.fields.get(name)
        return fv.value if fv is not None else None

    def values(self) -> dict[str, Any]:
        return {name: fv.value for name, fv in self.fields.items()}

    def pending_value(self, name: str) -> Any:
        p = self.pending.get(name)
        return p.value if p is not None else None

    def touch(self, name: str, source: Source, ts: float) -> None:
        self.last_seen.setdefault(name, {})[source] = ts


@dataclass
class ZoneEntry:
    record: ZoneRecord
    state: ClimateState

    @property
    def zone_id(self) -> str:
        return self.record.id

    @property
    def primary_channel(self) -> ChannelRecord | None:
        return self.record.channels[0] if self.record.channels else None

    def setpoint_bounds(self) -> tuple[float, float]:
        ch = self.primary_channel
        if ch is None:
            return 5.0, 30.0
        return ch.setpoint_min, ch.setpoint_max


class ZoneStateStore:
    """Canonical in-memory zone state keyed by durable zone ID.

    Mutating methods are called by the Reconciler only; everyone else reads.
    """

    def __init__(self) -> None:
        self._zones: dict[str, ZoneEntry] = {}
        self._installation_cooling: dict[str, bool] = {}

    def __contains__(self, zone_id: object) -> bool:
        return zone_id in self._zones

    def __iter__(self) -> Iterator[ZoneEntry]:
        return iter(list(self._zones.values()))

    def __len__(self) -> int:
        return len(self._zones)

    def get(self, zone_id: str) -> ZoneEntry | None:
        return self._zones.get(zone_id)

    def zone_ids(self, installation_unique: str | None = None) -> list[str]:
        return [
            zid
            for zid, e in self._zones.items()
            if installation_unique is None or e.record.installation_unique == installation_unique
        ]

    def cooling(self, installation_unique: str) -> bool:
        return self._installation_cooling.get(installation_unique, False)

    def snapshot(self, zone_id: str) -> dict[str, Any] | None:
        e = self._zones.get(zone_id)
        if e is None:
            return None
        st = e.state
        return {
            "zone_id": zone_id,
            "name": e.record.name,
            "number": e.record.number,
            "group": e.record.group_name,
            "installation": e.record.installation_unique,
            "channels": e.record.channel_ids,
            "available": st.available,
            "state": st.values(),
            "pending": {k: p.value for k, p in st.pending.items()},
        }

    # mutation (Reconciler)

    def upsert(self, record: ZoneRecord) -> tuple[ZoneEntry, bool]:
        e = self._zones.get(record.id)
        if e is None:
            e = ZoneEntry(record=record, state=ClimateState(zone_id=record.id))
            self._zones[record.id] = e
            return e, True
        e.record = record
        return e, False

    def remove(self, zone_id: str) -> ZoneEntry | None:
        return self._zones.pop(zone_id, None)

    def set_cooling(self, installation_unique: str, cooling: bool) -> None:
        self._installation_cooling[installation_unique] = cooling


def config_key(record: ZoneRecord) -> tuple:
    """Parts of a zone record that show up in discovery config."""
    return (
        record.name,
        record.group_name,
        tuple(record.channel_ids),
        tuple((c.setpoint_min, c.setpoint_max, c.heating, c.cooling) for c in record.channels),
    )


def _first(channels: list[ChannelRecord], getter) -> Any:
    for ch in channels:
        v = getter(ch)
        if v is not None:
            return v
    return None


def derive_fields(record: ZoneRecord, *, cooling: bool, referentials: ReferentialTable) -> dict[str, Any]:
    """Aggregate a zone's channels into ClimateState field values.

    Values come from the first channel that reports them. Fields no channel
    reports are left out so they never overwrite a known value with None.
    """
    chans = record.channels
    out: dict[str, Any] = {}
    if not chans:
        return out

    out[TARGET_TEMPERATURE] = _first(chans, lambda c: c.setpoint.celsius)
    out[CURRENT_TEMPERATURE] = _first(chans, lambda c: c.current_temperature.celsius)
    out[HUMIDITY] = _first(chans, lambda c: c.humidity)
    out[DEMAND] = _first(chans, lambda c: c.demand)

    code = _first(chans, lambda c: c.mode_code)
    preset = referentials.label(MODE_PERMANENT, code)
    if preset is not None:
        if preset == MODE_OFF:
            out[MODE] = MODE_OFF
        else:
            out[MODE] = MODE_COOL if cooling else MODE_HEAT
            out[PRESET] = preset

    primary = chans[0]
    out[RING_LIGHT] = primary.ring_light
    out[LOCKED] = primary.locked
    out[LOW_BATTERY] = any(c.low_battery for c in chans)
    out[OPEN_WINDOW] = any(c.open_window for c in chans)
    return {k: v for k, v in out.items() if v is not None}
