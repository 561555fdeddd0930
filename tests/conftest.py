from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional, Tuple

import pytest
import pytest_asyncio


@pytest.fixture(autouse=True)
def _ensure_event_loop_for_sync_tests():
    """Ensure asyncio.get_event_loop() works in sync tests.

    With pytest + pytest-asyncio, the default loop may be cleared between
    tests. We create a loop when missing and clean it up after the test.
    """

    created_loop: asyncio.AbstractEventLoop | None = None
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        created_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(created_loop)

    yield

    if created_loop is not None:
        if not created_loop.is_closed():
            created_loop.close()
        asyncio.set_event_loop(None)


@pytest.fixture(autouse=True)
def _isolate_launcher_env(monkeypatch: pytest.MonkeyPatch):
    """Keep a developer's LANLAUNCHER_* overrides out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("LANLAUNCHER_"):
            monkeypatch.delenv(name, raising=False)
    yield


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests marked with @pytest.mark.integration.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-integration"):
        return
    deselected = [item for item in items if item.get_closest_marker("integration")]
    if deselected:
        config.hook.pytest_deselected(items=deselected)
        items[:] = [item for item in items if not item.get_closest_marker("integration")]


# ─────────────────────────────────────────────────────────────────
# Loopback discovery server
# ─────────────────────────────────────────────────────────────────


class _FakeServerProtocol(asyncio.DatagramProtocol):
    """Answers the discovery token like a launcher server would."""

    def __init__(self, reply: Any, raw_reply: Optional[bytes] = None):
        self.reply = reply
        self.raw_reply = raw_reply
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.received: List[Tuple[bytes, Tuple[str, int]]] = []

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.received.append((data, addr))
        if data != b"lanLauncher://get_ip" or self.transport is None:
            return
        if self.raw_reply is not None:
            self.transport.sendto(self.raw_reply, addr)
        elif self.reply is not None:
            replies = self.reply if isinstance(self.reply, list) else [self.reply]
            for reply in replies:
                self.transport.sendto(json.dumps(reply).encode("utf-8"), addr)


class FakeDiscoveryServer:
    def __init__(self, protocol: _FakeServerProtocol, transport: asyncio.DatagramTransport):
        self.protocol = protocol
        self.transport = transport

    @property
    def port(self) -> int:
        return self.transport.get_extra_info("sockname")[1]

    @property
    def probes(self) -> int:
        return sum(1 for data, _ in self.protocol.received if data == b"lanLauncher://get_ip")

    def close(self) -> None:
        self.transport.close()


@pytest_asyncio.fixture
async def discovery_server_factory():
    """Start loopback UDP servers that answer discovery probes."""
    servers: List[FakeDiscoveryServer] = []

    async def start(
        reply: Any = None,
        raw_reply: Optional[bytes] = None,
    ) -> FakeDiscoveryServer:
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: _FakeServerProtocol(reply, raw_reply),
            local_addr=("127.0.0.1", 0),
        )
        server = FakeDiscoveryServer(protocol, transport)
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.close()
