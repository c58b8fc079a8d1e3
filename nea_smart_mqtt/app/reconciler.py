from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Union

from .parsers import ZoneRecord
from .zone_store import (
    ClimateState,
    FieldValue,
    PendingWrite,
    Source,
    ZoneEntry,
    ZoneStateStore,
    config_key,
)

_LOGGER = logging.getLogger("nea_reconciler")

AVAILABILITY = "availability"
CONFIG = "config"
DISCOVERED = "discovered"
REMOVED = "removed"

FLOAT_TOLERANCE = 0.05


@dataclass(frozen=True)
class Update:
    zone_id: str
    field: str
    value: Any
    source: Source
    timestamp: float


@dataclass(frozen=True)
class ZoneSeen:
    record: ZoneRecord
    timestamp: float


@dataclass(frozen=True)
class ZoneMissed:
    zone_id: str
    timestamp: float


@dataclass(frozen=True)
class InstallationMode:
    unique: str
    cooling: bool


Item = Union[Update, ZoneSeen, ZoneMissed, InstallationMode]


@dataclass(frozen=True)
class Change:
    zone_id: str
    field: str
    value: Any


def values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return a is b or a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(float(a) - float(b)) < FLOAT_TOLERANCE
    return a == b


def _newer(source: Source, ts: float, cur: FieldValue) -> bool:
    if ts > cur.timestamp:
        return True
    if ts < cur.timestamp:
        return False
    # a push wins a tie against a poll, never the reverse
    return not (source is Source.POLL and cur.source is Source.PUSH)


class Reconciler:
    """Single mutation entry point for the zone state store.

    Everything that changes zone state (poll results, push messages, local
    commands and their rejections, zone lifecycle) is submitted here as an
    item. ``apply`` merges one batch and returns the fields whose resolved
    value changed; the worker started by ``start`` drains the queue in
    submission order and hands each batch's changes to ``on_changes``.
    """

    def __init__(
        self,
        store: ZoneStateStore,
        *,
        grace_s: float,
        removal_misses: int = 3,
        clock: Callable[[], float] = time.monotonic,
        on_changes: Callable[[list[Change]], None] | None = None,
    ):
        self._store = store
        self._grace_s = float(grace_s)
        self._removal_misses = max(1, int(removal_misses))
        self._clock = clock
        self._on_changes = on_changes
        self._queue: asyncio.Queue[tuple[list[Item], asyncio.Future | None] | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def store(self) -> ZoneStateStore:
        return self._store

    @property
    def grace_s(self) -> float:
        return self._grace_s

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------ queue

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self._queue.put(None)
        try:
            await self._worker
        finally:
            self._worker = None

    async def submit(self, items: Iterable[Item]) -> list[Change]:
        """Queue a batch and wait until the worker has applied it."""
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((list(items), fut))
        return await fut

    def submit_nowait(self, items: Iterable[Item]) -> None:
        self._queue.put_nowait((list(items), None))

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            if job is None:
                return
            items, fut = job
            try:
                changes = self.apply(items)
                if changes and self._on_changes is not None:
                    self._on_changes(changes)
            except Exception as e:
                _LOGGER.exception("Reconciler pass failed")
                if fut is not None and not fut.done():
                    fut.set_exception(e)
                continue
            if fut is not None and not fut.done():
                fut.set_result(changes)

    # ------------------------------------------------------------ merge

    def apply(self, items: Iterable[Item], now: float | None = None) -> list[Change]:
        now = self._clock() if now is None else now
        changes: list[Change] = []
        for item in items:
            try:
                if isinstance(item, Update):
                    ch = self._apply_update(item, now)
                    if ch is not None:
                        changes.append(ch)
                elif isinstance(item, ZoneSeen):
                    changes.extend(self._zone_seen(item))
                elif isinstance(item, ZoneMissed):
                    changes.extend(self._zone_missed(item))
                elif isinstance(item, InstallationMode):
                    self._store.set_cooling(item.unique, item.cooling)
            except Exception:
                # one zone's bad update never stops the rest of the batch
                _LOGGER.exception("Failed to apply %r", item)
        changes.extend(self.expire_pending(now))
        return changes

    def expire_pending(self, now: float | None = None) -> list[Change]:
        now = self._clock() if now is None else now
        changes: list[Change] = []
        for entry in self._store:
            st = entry.state
            for name, pend in list(st.pending.items()):
                if not pend.expired(now):
                    continue
                del st.pending[name]
                if pend.disagree_pushed and pend.disagree_at is not None:
                    before = st.value(name)
                    st.fields[name] = FieldValue(pend.disagree_value, Source.PUSH, pend.disagree_at)
                    _LOGGER.info(
                        "Zone %s %s: optimistic %r timed out, reverting to %r",
                        entry.zone_id,
                        name,
                        pend.value,
                        pend.disagree_value,
                    )
                    if not values_equal(before, pend.disagree_value):
                        changes.append(Change(entry.zone_id, name, pend.disagree_value))
                else:
                    st.unconfirmed[name] = pend.previous
                    _LOGGER.debug("Zone %s %s: optimistic %r grace elapsed", entry.zone_id, name, pend.value)
        return changes

    def _apply_update(self, upd: Update, now: float) -> Change | None:
        entry = self._store.get(upd.zone_id)
        if entry is None:
            _LOGGER.debug("Update for unknown zone %s ignored", upd.zone_id)
            return None
        st = entry.state
        name = upd.field
        before = st.value(name)
        st.touch(name, upd.source, upd.timestamp)

        if upd.source is Source.COMMAND:
            self._optimistic(entry, upd, now)
        elif upd.source is Source.REJECT:
            self._reject(entry, upd)
        else:
            self._external(entry, upd, now)

        after = st.value(name)
        if name in st.fields and not values_equal(before, after):
            return Change(upd.zone_id, name, after)
        if before is not None and name not in st.fields:
            return Change(upd.zone_id, name, None)
        return None

    def _optimistic(self, entry: ZoneEntry, upd: Update, now: float) -> None:
        st = entry.state
        old = st.pending.get(upd.field)
        # a superseding command keeps the value shown before the first one
        previous = old.previous if old is not None else st.fields.get(upd.field)
        st.unconfirmed.pop(upd.field, None)
        st.pending[upd.field] = PendingWrite(
            value=upd.value,
            previous=previous,
            issued_at=now,
            grace_s=self._grace_s,
        )
        st.fields[upd.field] = FieldValue(upd.value, Source.COMMAND, upd.timestamp)

    def _reject(self, entry: ZoneEntry, upd: Update) -> None:
        st = entry.state
        pend = st.pending.get(upd.field)
        if pend is None:
            # grace ran out before the cloud answered: undo only while nothing
            # newer than the command has been applied to the field
            cur = st.fields.get(upd.field)
            if (
                upd.field in st.unconfirmed
                and cur is not None
                and cur.source is Source.COMMAND
                and values_equal(cur.value, upd.value)
            ):
                self._restore(st, upd.field, st.unconfirmed.pop(upd.field))
            return
        if not values_equal(pend.value, upd.value):
            # rejection of a command that has since been superseded
            return
        del st.pending[upd.field]
        self._restore(st, upd.field, pend.previous)

    @staticmethod
    def _restore(st: ClimateState, name: str, previous: FieldValue | None) -> None:
        if previous is None:
            st.fields.pop(name, None)
        else:
            st.fields[name] = previous

    def _external(self, entry: ZoneEntry, upd: Update, now: float) -> None:
        st = entry.state
        name = upd.field
        pend = st.pending.get(name)

        if pend is None:
            cur = st.fields.get(name)
            if cur is None or _newer(upd.source, upd.timestamp, cur):
                st.fields[name] = FieldValue(upd.value, upd.source, upd.timestamp)
            return

        if values_equal(upd.value, pend.value):
            del st.pending[name]
            st.fields[name] = FieldValue(upd.value, upd.source, upd.timestamp)
            _LOGGER.debug("Zone %s %s: optimistic %r confirmed by %s", entry.zone_id, name, pend.value, upd.source.value)
            return

        if pend.disagree_count and values_equal(pend.disagree_value, upd.value):
            pend.disagree_count += 1
        else:
            pend.reset_disagreement()
            pend.disagree_value = upd.value
            pend.disagree_count = 1
        if upd.source is Source.POLL:
            pend.disagree_polls += 1
        else:
            pend.disagree_pushed = True
        pend.disagree_at = upd.timestamp

        if upd.source is Source.PUSH:
            revert = pend.disagree_count >= 2 or pend.expired(now)
        else:
            revert = pend.disagree_polls >= 2

        if revert:
            del st.pending[name]
            st.fields[name] = FieldValue(upd.value, upd.source, upd.timestamp)
            _LOGGER.info(
                "Zone %s %s: optimistic %r overridden by %s value %r",
                entry.zone_id,
                name,
                pend.value,
                upd.source.value,
                upd.value,
            )
        else:
            _LOGGER.debug(
                "Zone %s %s: %s value %r suppressed while %r is pending",
                entry.zone_id,
                name,
                upd.source.value,
                upd.value,
                pend.value,
            )

    # -------------------------------------------------------- lifecycle

    def _zone_seen(self, item: ZoneSeen) -> list[Change]:
        existing = self._store.get(item.record.id)
        old_key = config_key(existing.record) if existing is not None else None
        entry, created = self._store.upsert(item.record)
        st = entry.state
        changes: list[Change] = []
        if created:
            _LOGGER.info("New zone %s (%s)", entry.zone_id, entry.record.name)
            changes.append(Change(entry.zone_id, DISCOVERED, True))
        elif old_key != config_key(item.record):
            changes.append(Change(entry.zone_id, CONFIG, True))
        st.misses = 0
        if not st.available:
            st.available = True
            changes.append(Change(entry.zone_id, AVAILABILITY, True))
        return changes

    def _zone_missed(self, item: ZoneMissed) -> list[Change]:
        entry = self._store.get(item.zone_id)
        if entry is None:
            return []
        st = entry.state
        st.misses += 1
        changes: list[Change] = []
        if st.misses >= self._removal_misses:
            self._store.remove(item.zone_id)
            _LOGGER.info("Zone %s removed after %d missed polls", item.zone_id, st.misses)
            return [Change(item.zone_id, REMOVED, True)]
        if st.available:
            st.available = False
            _LOGGER.warning("Zone %s missing from snapshot, marking unavailable", item.zone_id)
            changes.append(Change(item.zone_id, AVAILABILITY, False))
        return changes
