from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .errors import AuthError, BridgeError

_LOGGER = logging.getLogger("nea_scheduler")


@dataclass
class Job:
    name: str
    interval_s: float
    fn: Callable[[], Awaitable[object]]
    run_at_start: bool = True
    condition: Callable[[], bool] | None = None
    runs: int = 0
    failures: int = 0
    last_error: str | None = None


class BridgeScheduler:
    """Independent interval timers, one asyncio task each.

    A failing tick is logged and the timer keeps going. ``AuthError`` means
    the configured credentials no longer work; it stops that timer and is
    handed to ``on_fatal``.
    """

    def __init__(self, *, on_fatal: Callable[[BaseException], None] | None = None):
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._on_fatal = on_fatal
        self._running = False
        self._ticking: set[str] = set()

    @property
    def running(self) -> bool:
        return self._running

    def add(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[object]],
        *,
        run_at_start: bool = True,
        condition: Callable[[], bool] | None = None,
    ) -> None:
        if interval_s <= 0:
            _LOGGER.info("Timer %s disabled", name)
            return
        self._jobs[name] = Job(name=name, interval_s=float(interval_s), fn=fn, run_at_start=run_at_start, condition=condition)

    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        for job in self._jobs.values():
            self._tasks[job.name] = loop.create_task(self._loop(job), name=f"nea-{job.name}")

    async def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling ticks.

        Sleeping timers are cancelled. A tick that is already running is
        allowed to finish, for at most ``timeout`` seconds, so its result
        still reaches the reconciler.
        """
        self._running = False
        tasks = dict(self._tasks)
        self._tasks.clear()
        current = asyncio.current_task()
        busy: list[asyncio.Task] = []
        for name, t in tasks.items():
            if t is current:
                continue
            if name in self._ticking:
                busy.append(t)
            else:
                t.cancel()
        if busy:
            _, pending = await asyncio.wait(busy, timeout=timeout)
            for t in pending:
                _LOGGER.warning("Timer task %s still running at shutdown, cancelling", t.get_name())
                t.cancel()
        await asyncio.gather(*(t for t in tasks.values() if t is not current), return_exceptions=True)

    async def run_once(self, name: str) -> bool:
        """Run one tick of a timer right now. Returns False when it failed."""
        job = self._jobs[name]
        return await self._tick(job)

    async def _tick(self, job: Job) -> bool:
        if job.condition is not None and not job.condition():
            _LOGGER.debug("Timer %s skipped", job.name)
            return True
        try:
            await job.fn()
        except asyncio.CancelledError:
            raise
        except AuthError:
            raise
        except BridgeError as e:
            job.failures += 1
            job.last_error = str(e)
            _LOGGER.warning("Timer %s failed: %s", job.name, e)
            return False
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            _LOGGER.exception("Timer %s crashed", job.name)
            return False
        job.runs += 1
        job.last_error = None
        return True

    async def _loop(self, job: Job) -> None:
        try:
            if not job.run_at_start:
                await asyncio.sleep(job.interval_s)
            while self._running:
                self._ticking.add(job.name)
                try:
                    await self._tick(job)
                finally:
                    self._ticking.discard(job.name)
                if not self._running:
                    break
                await asyncio.sleep(job.interval_s)
        except AuthError as e:
            job.failures += 1
            job.last_error = str(e)
            _LOGGER.error("Timer %s: cloud login rejected (%s); stopping", job.name, e)
            if self._on_fatal is not None:
                self._on_fatal(e)
