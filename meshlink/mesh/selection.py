"""User selection of a device when discovery finds more than one."""

from dataclasses import dataclass
from typing import Callable, Optional
import asyncio
import logging

from .base import TransportKind
from ..errors import DeviceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceCandidate:
    """A discovered BLE device or serial port."""
    id: str
    name: str
    kind: TransportKind

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "kind": self.kind.value}


class DeviceSelector:
    """Surfaces candidate lists and waits for an external choice.

    Only one selection can be pending at a time; asking again cancels the
    previous request.
    """

    def __init__(self):
        self._pending: Optional[asyncio.Future] = None
        self._candidates: list[DeviceCandidate] = []
        self._listeners: list[Callable[[list[DeviceCandidate]], None]] = []

    @property
    def candidates(self) -> list[DeviceCandidate]:
        return list(self._candidates)

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def on_candidates(self, callback: Callable[[list[DeviceCandidate]], None]) -> Callable[[], None]:
        """Register a callback receiving each candidate list (empty when resolved)."""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    async def choose(self, candidates: list[DeviceCandidate]) -> DeviceCandidate:
        """Return the chosen candidate, asking the user when there are several."""
        if not candidates:
            raise DeviceUnavailable("No devices found")
        if len(candidates) == 1:
            return candidates[0]

        self.cancel()
        loop = asyncio.get_running_loop()
        self._pending = future = loop.create_future()
        self._candidates = list(candidates)
        logger.info(f"Waiting for selection among {len(candidates)} devices")
        self._notify()
        try:
            chosen = await future
        finally:
            if self._pending is future:
                self._pending = None
                self._candidates = []
                self._notify()
        if chosen is None:
            raise DeviceUnavailable("Device selection cancelled")
        return chosen

    def select(self, candidate_id: str) -> bool:
        """Resolve the pending selection; False if nothing matches."""
        if not self.pending:
            return False
        for candidate in self._candidates:
            if candidate.id == candidate_id:
                self._pending.set_result(candidate)
                return True
        return False

    def cancel(self) -> None:
        """Cancel any pending selection."""
        if self.pending:
            self._pending.set_result(None)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self.candidates)
            except Exception as e:
                logger.error(f"Error in candidate callback: {e}")
