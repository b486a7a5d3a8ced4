"""Reconnection with bounded exponential backoff.

A run is identified by a private token. ``cancel()`` or a new ``trigger()``
replaces the token, and a run whose token or generation is no longer current
exits quietly at its next resume point.
"""

from typing import Awaitable, Callable, Optional
import asyncio
import logging

from .base import ConnectionParameters

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_DELAY = 2.0
MAX_DELAY = 32.0


class ReconnectionSupervisor:
    """Retries session establishment after a presumed-dead transport."""

    def __init__(
        self,
        establish: Callable[[ConnectionParameters, int], Awaitable[bool]],
        current_generation: Callable[[], int],
        on_attempt: Optional[Callable[[int, float], None]] = None,
        on_exhausted: Optional[Callable[[ConnectionParameters], None]] = None,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY,
        max_delay: float = MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._establish = establish
        self._current_generation = current_generation
        self._on_attempt = on_attempt
        self._on_exhausted = on_exhausted
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._token: Optional[object] = None
        self._task: Optional[asyncio.Task] = None
        self._backoff: Optional[asyncio.Future] = None
        self._attempt = 0

    @property
    def active(self) -> bool:
        return self._token is not None

    @property
    def attempt(self) -> int:
        """Attempt number in progress, 0 when idle."""
        return self._attempt

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds before the given (1-based) attempt."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def trigger(self, params: ConnectionParameters, generation: int) -> bool:
        """Start a reconnection run unless one is already active."""
        if self.active:
            logger.debug("Reconnection already in progress, ignoring trigger")
            return False
        token = object()
        self._token = token
        self._attempt = 0
        self._task = asyncio.create_task(self._run(token, params, generation))
        return True

    def cancel(self) -> None:
        """Drop the active run; it exits at its next resume point."""
        if self._token is None:
            return
        logger.info("Reconnection cancelled")
        self._token = None
        self._attempt = 0
        if self._backoff is not None and not self._backoff.done():
            self._backoff.cancel()

    def _current(self, token: object, generation: int) -> bool:
        return self._token is token and self._current_generation() == generation

    async def _wait(self, delay: float) -> None:
        self._backoff = asyncio.ensure_future(self._sleep(delay))
        try:
            await self._backoff
        finally:
            self._backoff = None

    async def _run(self, token: object, params: ConnectionParameters, generation: int) -> None:
        try:
            for attempt in range(1, self.max_attempts + 1):
                if not self._current(token, generation):
                    return
                delay = self.delay_for(attempt)
                self._attempt = attempt
                logger.info(
                    f"Reconnecting {params.kind.value} in {delay:.0f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                if self._on_attempt:
                    self._on_attempt(attempt, delay)

                try:
                    await self._wait(delay)
                except asyncio.CancelledError:
                    if self._current(token, generation):
                        raise
                    return
                if not self._current(token, generation):
                    return

                try:
                    established = await self._establish(params, generation)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not self._current(token, generation):
                        return
                    logger.warning(f"Reconnect attempt {attempt}/{self.max_attempts} failed: {e}")
                    continue
                if established and self._current(token, generation):
                    logger.info(f"Reconnected after {attempt} attempt(s)")
                return

            if self._current(token, generation):
                logger.error(f"Reconnection failed after {self.max_attempts} attempts")
                if self._on_exhausted:
                    self._on_exhausted(params)
        finally:
            if self._token is token:
                self._token = None
                self._attempt = 0
