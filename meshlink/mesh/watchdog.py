"""Liveness watchdog for an active session.

Silent transport failures never produce an event, so liveness is judged by
polling the time since the last inbound event rather than by reacting to
events. BLE links additionally get an active probe: a failed write is
treated as a dead link straight away.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import time

from .base import TransportKind

logger = logging.getLogger(__name__)

POLL_INTERVAL = 15.0
PROBE_INTERVAL = 30.0


class LivenessState(Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    DEAD = "dead"


@dataclass(frozen=True)
class Thresholds:
    stale: float
    dead: float


DEFAULT_THRESHOLDS = {
    TransportKind.BLE: Thresholds(stale=90, dead=180),
    TransportKind.SERIAL: Thresholds(stale=120, dead=300),
    TransportKind.TCP: Thresholds(stale=60, dead=120),
}


class LivenessWatchdog:
    """Escalates healthy -> stale -> dead for one session.

    The dead callback fires at most once per watchdog; a new session gets a
    new watchdog.
    """

    def __init__(
        self,
        thresholds: Thresholds,
        last_event: Callable[[], float],
        on_stale: Callable[[], None],
        on_recovered: Callable[[], None],
        on_dead: Callable[[str], None],
        probe: Optional[Callable[[], Awaitable[None]]] = None,
        poll_interval: float = POLL_INTERVAL,
        probe_interval: float = PROBE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.thresholds = thresholds
        self._last_event = last_event
        self._on_stale = on_stale
        self._on_recovered = on_recovered
        self._on_dead = on_dead
        self._probe = probe
        self._poll_interval = poll_interval
        self._probe_interval = probe_interval
        self._clock = clock
        self._state = LivenessState.HEALTHY
        self._started_at = clock()
        self._tasks: list[asyncio.Task] = []

    @property
    def state(self) -> LivenessState:
        return self._state

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._started_at = self._clock()
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        if self._probe is not None:
            self._tasks.append(asyncio.create_task(self._probe_loop()))

    def stop(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []

    def elapsed(self) -> float:
        """Seconds since the last event (or since the watchdog started)."""
        return self._clock() - max(self._last_event(), self._started_at)

    def check(self) -> LivenessState:
        """Evaluate elapsed time and fire any resulting transition."""
        if self._state == LivenessState.DEAD:
            return self._state
        elapsed = self.elapsed()
        if elapsed >= self.thresholds.dead:
            self._die(f"no events for {elapsed:.0f}s")
        elif elapsed >= self.thresholds.stale:
            if self._state == LivenessState.HEALTHY:
                logger.warning(f"Session stale: no events for {elapsed:.0f}s")
                self._state = LivenessState.STALE
                self._on_stale()
        else:
            self.notify_event()
        return self._state

    def notify_event(self) -> None:
        """An event arrived; a stale session recovers immediately."""
        if self._state == LivenessState.STALE:
            logger.info("Session recovered, events flowing again")
            self._state = LivenessState.HEALTHY
            self._on_recovered()

    async def probe_once(self) -> None:
        if self._probe is None or self._state == LivenessState.DEAD:
            return
        try:
            await self._probe()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._die(f"probe failed: {e}")

    def _die(self, reason: str) -> None:
        if self._state == LivenessState.DEAD:
            return
        logger.warning(f"Session presumed dead: {reason}")
        self._state = LivenessState.DEAD
        self.stop()
        self._on_dead(reason)

    async def _poll_loop(self) -> None:
        while self._state != LivenessState.DEAD:
            await asyncio.sleep(self._poll_interval)
            self.check()

    async def _probe_loop(self) -> None:
        while self._state != LivenessState.DEAD:
            await asyncio.sleep(self._probe_interval)
            await self.probe_once()
