"""Transport factory for BLE, serial and TCP connections to Meshtastic devices.

The factory opens the physical link but does not start the configuration
handshake where the library allows deferring it; the session does that once
its event subscriptions are in place.
"""

from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional
import asyncio
import errno
import logging
import re
import weakref

import meshtastic.ble_interface
import meshtastic.serial_interface
import meshtastic.tcp_interface
import meshtastic.util

from .base import TransportKind
from .selection import DeviceCandidate, DeviceSelector
from ..errors import InvalidAddress, MeshLinkError, TransportIOError

logger = logging.getLogger(__name__)

DEFAULT_TCP_PORT = 4403

_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

# Interfaces whose transport has been released; late events from them are ignored
_retired: "weakref.WeakSet[Any]" = weakref.WeakSet()


@dataclass(frozen=True)
class NetworkAddress:
    host: str
    port: int = DEFAULT_TCP_PORT
    tls: bool = False


def parse_network_address(address: Optional[str], default_port: int = DEFAULT_TCP_PORT) -> NetworkAddress:
    """Reduce a user-supplied address to a bare host, port and TLS hint.

    A scheme prefix is stripped; ``https://`` sets the TLS hint. Trailing
    slashes and any path are dropped.
    """
    host = (address or "").strip()
    tls = host.lower().startswith("https://")
    host = _SCHEME.sub("", host)
    host = host.split("/", 1)[0]
    if not host:
        raise InvalidAddress("Network address required")

    port = default_port
    if host.startswith("["):
        # Bracketed IPv6, optionally followed by a port
        end = host.find("]")
        if end == -1:
            raise InvalidAddress(f"Malformed address: {address!r}")
        rest = host[end + 1:]
        host = host[1:end]
        if rest.startswith(":"):
            port = _parse_port(rest[1:], address)
    elif host.count(":") == 1:
        host, port_text = host.split(":")
        port = _parse_port(port_text, address)
    if not host:
        raise InvalidAddress(f"Malformed address: {address!r}")
    return NetworkAddress(host=host, port=port, tls=tls)


def _parse_port(text: str, address: Optional[str]) -> int:
    if not text.isdigit() or not 0 < int(text) < 65536:
        raise InvalidAddress(f"Invalid port in address: {address!r}")
    return int(text)


@dataclass
class TransportHandle:
    """An opened link to a device plus the library interface driving it."""
    kind: TransportKind
    interface: Any
    address: Optional[str] = None
    tls: bool = False
    # Starts the configuration handshake on interfaces opened without it
    starter: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self.starter is not None:
            self.starter()


def is_retired(interface: Any) -> bool:
    """Whether the interface belongs to a transport that was already closed."""
    try:
        return interface in _retired
    except TypeError:
        return False


def discover_serial_ports() -> list[DeviceCandidate]:
    """List serial ports that look like Meshtastic devices."""
    ports = meshtastic.util.findPorts(True)
    return [DeviceCandidate(id=port, name=port, kind=TransportKind.SERIAL) for port in ports]


def discover_ble_devices() -> list[DeviceCandidate]:
    """Scan for advertising Meshtastic BLE devices."""
    devices = meshtastic.ble_interface.BLEInterface.scan()
    return [
        DeviceCandidate(id=d.address, name=d.name or d.address, kind=TransportKind.BLE)
        for d in devices
    ]


def _is_expected_close_error(exc: BaseException) -> bool:
    """Close failures that only mean there was nothing (left) to close."""
    if isinstance(exc, (AttributeError, NotImplementedError)):
        return True
    if isinstance(exc, OSError) and exc.errno == errno.EBADF:
        return True
    text = str(exc).lower()
    return "closed" in text or "not open" in text or "not connected" in text


def close_quietly(closer: Optional[Callable[[], Any]], what: str) -> None:
    """Call a close operation, logging instead of raising."""
    if closer is None:
        return
    try:
        closer()
    except Exception as e:
        if _is_expected_close_error(e):
            logger.debug(f"Ignoring close error on {what}: {e}")
        else:
            logger.warning(f"Error closing {what}: {e}")


class TransportFactory:
    """Opens and closes transports for each supported kind."""

    def __init__(
        self,
        selector: Optional[DeviceSelector] = None,
        tcp_port: int = DEFAULT_TCP_PORT,
        timeout: float = 60.0,
        serial_discovery: Callable[[], list[DeviceCandidate]] = discover_serial_ports,
        ble_discovery: Callable[[], list[DeviceCandidate]] = discover_ble_devices,
    ):
        self.selector = selector or DeviceSelector()
        self.tcp_port = tcp_port
        self.timeout = timeout
        self._serial_discovery = serial_discovery
        self._ble_discovery = ble_discovery

    async def open(self, kind: "str | TransportKind", address: Optional[str] = None) -> TransportHandle:
        """Open a transport of the given kind.

        Raises:
            InvalidAddress: TCP address missing or malformed
            DeviceUnavailable: nothing found, or the selection was cancelled
            TransportIOError: the library failed to open the link
        """
        kind = TransportKind.parse(kind)

        if kind == TransportKind.TCP:
            target = parse_network_address(address, self.tcp_port)
            if target.tls:
                logger.warning(
                    f"TLS requested for {target.host}, but the TCP transport is plaintext"
                )
            logger.info(f"Opening TCP transport to {target.host}:{target.port}")
            interface = await self._run(self._open_tcp, target)
            return TransportHandle(
                kind=kind,
                interface=interface,
                address=f"{target.host}:{target.port}" if target.port != self.tcp_port else target.host,
                tls=target.tls,
                starter=partial(_start_stream, interface),
            )

        if kind == TransportKind.SERIAL:
            port = address or await self._choose(self._serial_discovery)
            logger.info(f"Opening serial transport on {port}")
            interface = await self._run(self._open_serial, port)
            return TransportHandle(
                kind=kind,
                interface=interface,
                address=port,
                starter=partial(_start_stream, interface),
            )

        ble_address = address or await self._choose(self._ble_discovery)
        logger.info(f"Opening BLE transport to {ble_address}")
        # BLE interfaces run the configuration handshake in their constructor
        interface = await self._run(self._open_ble, ble_address)
        return TransportHandle(kind=kind, interface=interface, address=ble_address)

    @staticmethod
    def close(handle: Optional[TransportHandle]) -> None:
        """Release the transport resources behind a handle. Never raises."""
        if handle is None:
            return
        interface = handle.interface
        for attr in ("stream", "socket", "client"):
            resource = getattr(interface, attr, None)
            if resource is not None:
                close_quietly(getattr(resource, "close", None), f"{handle.kind.value} {attr}")
        try:
            _retired.add(interface)
        except TypeError:
            pass

    async def _choose(self, discover: Callable[[], list[DeviceCandidate]]) -> str:
        candidates = await self._run(discover)
        chosen = await self.selector.choose(candidates)
        return chosen.id

    async def _run(self, fn: Callable, *args) -> Any:
        """Run a blocking library call in the executor, mapping its failures."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except MeshLinkError:
            raise
        except Exception as e:
            raise TransportIOError(f"{getattr(fn, '__name__', 'transport call')} failed: {e}") from e

    def _open_tcp(self, target: NetworkAddress) -> Any:
        interface = meshtastic.tcp_interface.TCPInterface(
            hostname=target.host,
            portNumber=target.port,
            connectNow=False,
            timeout=int(self.timeout),
        )
        try:
            interface.myConnect()
        except Exception:
            close_quietly(getattr(interface, "close", None), "tcp interface")
            raise
        return interface

    def _open_serial(self, port: str) -> Any:
        return meshtastic.serial_interface.SerialInterface(
            devPath=port,
            connectNow=False,
            timeout=int(self.timeout),
        )

    def _open_ble(self, address: str) -> Any:
        return meshtastic.ble_interface.BLEInterface(address, timeout=int(self.timeout))


def _start_stream(interface: Any) -> None:
    """Start the reader thread and wait for the device configuration."""
    interface.connect()
    interface.waitForConfig()
