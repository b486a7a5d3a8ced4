"""Shared pytest configuration and fixtures for the meshlink test suite."""

import asyncio
import itertools
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

import pytest
from meshtastic.protobuf import localonly_pb2
from pubsub import pub

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from meshlink.config import MeshConfig, ReconnectConfig, WatchdogConfig  # noqa: E402
from meshlink.mesh.base import TransportKind  # noqa: E402
from meshlink.mesh.client import MeshClient  # noqa: E402
from meshlink.mesh.selection import DeviceSelector  # noqa: E402
from meshlink.mesh.transports import TransportHandle  # noqa: E402

MY_NODE = 0xA1B2C3D4


# =============================================================================
# Fake meshtastic objects
# =============================================================================

class FakeSettings:
    def __init__(self, name: str = "", psk: bytes = b""):
        self.name = name
        self.psk = psk

    def Clear(self):
        self.name = ""
        self.psk = b""


class FakeChannel:
    def __init__(self, index: int, role: int, name: str = "", psk: bytes = b"\x01"):
        self.index = index
        self.role = role
        self.settings = FakeSettings(name, psk)


class FakeNode:
    """Stands in for meshtastic's ``Node`` (the interface's ``localNode``)."""

    def __init__(self):
        self.channels = [
            FakeChannel(0, role=1),
            FakeChannel(1, role=2, name="ops", psk=b"\x02" * 16),
            FakeChannel(2, role=0, psk=b""),
        ]
        self.localConfig = localonly_pb2.LocalConfig()
        self.moduleConfig = localonly_pb2.LocalModuleConfig()
        self.calls = []

    def writeConfig(self, section):
        self.calls.append(("writeConfig", section))

    def writeChannel(self, index):
        self.calls.append(("writeChannel", index))

    def beginSettingsTransaction(self):
        self.calls.append(("beginSettingsTransaction",))

    def commitSettingsTransaction(self):
        self.calls.append(("commitSettingsTransaction",))

    def removeNode(self, node_id):
        self.calls.append(("removeNode", node_id))

    def reboot(self, secs=10):
        self.calls.append(("reboot", secs))

    def shutdown(self, secs=10):
        self.calls.append(("shutdown", secs))

    def factoryReset(self, full=False):
        self.calls.append(("factoryReset",))

    def resetNodeDb(self):
        self.calls.append(("resetNodeDb",))


class FakeStream:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeInterface:
    """Stands in for a meshtastic stream/BLE interface.

    ``waitForConfig`` publishes ``meshtastic.connection.established`` the way
    the library does once the device has sent its configuration.
    """

    def __init__(self, my_node_num: int = MY_NODE, configures: bool = True):
        self.myInfo = SimpleNamespace(my_node_num=my_node_num)
        self.localNode = FakeNode()
        self.configures = configures
        self.stream = FakeStream()
        self.closed = False
        self.close_error: Optional[Exception] = None
        self.heartbeat_error: Optional[Exception] = None
        self.heartbeats = 0
        self.sent = []
        self._ids = itertools.count(1000)

    def connect(self):
        pass

    def waitForConfig(self):
        if self.configures:
            pub.sendMessage("meshtastic.connection.established", interface=self)

    def close(self):
        if self.close_error is not None:
            raise self.close_error
        self.closed = True

    def sendHeartbeat(self):
        if self.heartbeat_error is not None:
            raise self.heartbeat_error
        self.heartbeats += 1

    def sendText(self, text, destinationId=None, wantAck=False, channelIndex=0):
        packet_id = next(self._ids)
        self.sent.append(("text", text, destinationId, channelIndex, wantAck))
        return SimpleNamespace(id=packet_id)

    def sendData(self, data, destinationId=None, portNum=None, wantAck=False,
                 wantResponse=False, onResponse=None, channelIndex=0, hopLimit=None):
        self.sent.append(("data", type(data).__name__, destinationId, portNum, wantResponse, hopLimit))
        return SimpleNamespace(id=next(self._ids))

    # The library versions wait for the remote answer and time out without one
    def sendPosition(self, latitude=0.0, longitude=0.0, altitude=0, destinationId=None,
                     wantAck=False, wantResponse=False, channelIndex=0):
        raise RuntimeError("Timed out waiting for position")

    def sendTraceRoute(self, dest, hopLimit, channelIndex=0):
        raise RuntimeError("Timed out waiting for traceroute")

    def _generatePacketId(self):
        return next(self._ids)

    def _sendPacket(self, meshPacket, destinationId=None, wantAck=False):
        self.sent.append(("packet", meshPacket, destinationId, wantAck))
        return meshPacket


class FakeFactory:
    """Transport factory handing out ``FakeInterface``s.

    ``failures`` is consumed one entry per ``open``; an exception entry makes
    that open fail. With ``candidates`` set, an open without an address asks
    the selector first.
    """

    def __init__(self, selector: Optional[DeviceSelector] = None):
        self.selector = selector or DeviceSelector()
        self.opened = []
        self.interfaces = []
        self.failures = []
        self.candidates = []
        self.configures = True

    async def open(self, kind, address=None):
        kind = TransportKind.parse(kind)
        if address is None and self.candidates:
            address = (await self.selector.choose(self.candidates)).id
        self.opened.append((kind, address))
        await asyncio.sleep(0)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        interface = FakeInterface(configures=self.configures)
        self.interfaces.append(interface)
        return TransportHandle(
            kind=kind,
            interface=interface,
            address=address or "/dev/ttyFAKE0",
            starter=interface.waitForConfig,
        )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Backoff sleep that records delays; blocks while ``gate`` is clear."""

    def __init__(self, gated: bool = False):
        self.delays = []
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self, delay):
        self.delays.append(delay)
        await self.gate.wait()


async def settle(rounds: int = 5) -> None:
    """Let callbacks posted with ``call_soon_threadsafe`` run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def publish(topic: str, **kwargs) -> None:
    pub.sendMessage(topic, **kwargs)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def backoff() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def mesh_config() -> MeshConfig:
    return MeshConfig(
        transport="serial",
        address=None,
        auto_connect=False,
        handshake_timeout=2.0,
        ack_timeout=60.0,
        refresh_interval=0,
    )


@pytest.fixture
def make_client(factory, clock, backoff, mesh_config):
    """Build a ``MeshClient`` on fakes; the watchdog never polls by itself."""

    def _make(**overrides) -> MeshClient:
        kwargs = dict(
            mesh_config=mesh_config,
            watchdog_config=WatchdogConfig(poll_interval=3600, probe_interval=3600),
            reconnect_config=ReconnectConfig(),
            factory=factory,
            clock=clock,
            sleep=backoff,
        )
        kwargs.update(overrides)
        return MeshClient(**kwargs)

    return _make
