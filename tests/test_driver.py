"""Tests for TunnelDriver against a local echo server."""

from __future__ import annotations

import asyncio

import pytest

from kubeforward.discovery.snapshot import TunnelTarget
from kubeforward.exceptions import SetupError
from kubeforward.models.entries import PortEntry
from kubeforward.models.enums import OutcomeKind
from kubeforward.session.ports import find_free_port, is_port_free
from kubeforward.tunnel.driver import TunnelDriver
from kubeforward.tunnel.transport import RemoteStream, Transport

HOST = "127.0.0.1"


class LocalTransport(Transport):
    """Forwards to a local TCP port instead of a pod."""

    def __init__(self, port: int, prepare_error=None, stream_error=None, remote_error=None):
        self.port = port
        self.prepare_error = prepare_error
        self.stream_error = stream_error
        self.remote_error = remote_error
        self.prepared = 0
        self.opened = 0

    async def prepare(self, entry):
        self.prepared += 1
        if self.prepare_error is not None:
            raise self.prepare_error
        return TunnelTarget(namespace=entry.namespace, pod="echo-0", port=self.port)

    async def open_stream(self, target):
        self.opened += 1
        if self.stream_error is not None:
            raise self.stream_error
        reader, writer = await asyncio.open_connection(HOST, target.port)
        return RemoteStream(
            reader=reader, writer=writer, error=lambda: self.remote_error
        )


class HangingTransport(Transport):
    async def prepare(self, entry):
        await asyncio.Event().wait()


class Outcomes:
    """Collects reported outcomes and lets tests wait for them."""

    def __init__(self):
        self.items = []
        self._changed = asyncio.Event()

    def __call__(self, outcome):
        self.items.append(outcome)
        self._changed.set()

    @property
    def kinds(self):
        return [o.kind for o in self.items]

    async def wait_for(self, count: int, timeout: float = 2.0):
        async def _wait():
            while len(self.items) < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
async def echo_port():
    async def echo(reader, writer):
        while data := await reader.read(1024):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(echo, HOST, 0)
    port = server.sockets[0].getsockname()[1]
    yield port
    server.close()
    await server.wait_closed()


@pytest.fixture
def entry():
    return PortEntry(service="echo", namespace="default", remote_port=7)


@pytest.fixture
def local_port():
    return find_free_port(HOST)


def make_driver(transport, **kwargs) -> TunnelDriver:
    kwargs.setdefault("setup_timeout", 2.0)
    return TunnelDriver(transport, bind_host=HOST, **kwargs)


# =============================================================================
# Forwarding
# =============================================================================


@pytest.mark.asyncio
async def test_active_tunnel_forwards_bytes(echo_port, entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(LocalTransport(echo_port))
    handle = driver.start(entry, local_port, 1, outcomes)

    await outcomes.wait_for(1)
    assert outcomes.kinds == [OutcomeKind.ACTIVE]
    assert outcomes.items[0].generation == 1
    assert outcomes.items[0].key == entry.key

    reader, writer = await asyncio.open_connection(HOST, local_port)
    writer.write(b"ping")
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(4), 2) == b"ping"
    writer.close()

    driver.cancel(handle)
    assert await driver.wait_closed(handle, 2)


@pytest.mark.asyncio
async def test_each_connection_gets_its_own_stream(echo_port, entry, local_port):
    outcomes = Outcomes()
    transport = LocalTransport(echo_port)
    driver = make_driver(transport)
    handle = driver.start(entry, local_port, 1, outcomes)
    await outcomes.wait_for(1)

    for payload in (b"one", b"two"):
        reader, writer = await asyncio.open_connection(HOST, local_port)
        writer.write(payload)
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(3), 2) == payload
        writer.close()

    assert transport.prepared == 1
    assert transport.opened == 2
    driver.cancel(handle)
    await driver.wait_closed(handle, 2)


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_reports_stopped_once_and_frees_port(echo_port, entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(LocalTransport(echo_port))
    handle = driver.start(entry, local_port, 3, outcomes)
    await outcomes.wait_for(1)

    driver.cancel(handle)
    driver.cancel(handle)
    assert await driver.wait_closed(handle, 2)
    await asyncio.sleep(0.05)

    assert outcomes.kinds == [OutcomeKind.ACTIVE, OutcomeKind.STOPPED]
    assert all(o.generation == 3 for o in outcomes.items)
    assert is_port_free(HOST, local_port)


@pytest.mark.asyncio
async def test_cancel_drops_open_connections(echo_port, entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(LocalTransport(echo_port))
    handle = driver.start(entry, local_port, 1, outcomes)
    await outcomes.wait_for(1)

    reader, writer = await asyncio.open_connection(HOST, local_port)
    writer.write(b"hi")
    await writer.drain()
    await asyncio.wait_for(reader.readexactly(2), 2)

    driver.cancel(handle)

    try:
        data = await asyncio.wait_for(reader.read(), 2)
    except ConnectionResetError:
        data = b""
    assert data == b""
    writer.close()
    assert await driver.wait_closed(handle, 2)


@pytest.mark.asyncio
async def test_cancel_before_task_runs(entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(HangingTransport())
    handle = driver.start(entry, local_port, 1, outcomes)

    driver.cancel(handle)
    assert await driver.wait_closed(handle, 2)

    assert outcomes.kinds == [OutcomeKind.STOPPED]


@pytest.mark.asyncio
async def test_cancel_during_setup_reports_only_stopped(entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(HangingTransport())
    handle = driver.start(entry, local_port, 1, outcomes)
    await asyncio.sleep(0.05)

    driver.cancel(handle)
    assert await driver.wait_closed(handle, 2)

    assert outcomes.kinds == [OutcomeKind.STOPPED]


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_prepare_failure_reports_failed(entry, local_port):
    outcomes = Outcomes()
    transport = LocalTransport(1, prepare_error=SetupError("No running pod found"))
    driver = make_driver(transport)
    handle = driver.start(entry, local_port, 1, outcomes)

    await outcomes.wait_for(1)
    assert await driver.wait_closed(handle, 2)

    assert outcomes.kinds == [OutcomeKind.FAILED]
    assert outcomes.items[0].reason == "No running pod found"

    # Cancel after the terminal outcome adds nothing
    driver.cancel(handle)
    assert len(outcomes.items) == 1


@pytest.mark.asyncio
async def test_setup_timeout_reports_failed(entry, local_port):
    outcomes = Outcomes()
    driver = make_driver(HangingTransport(), setup_timeout=0.05)
    driver.start(entry, local_port, 1, outcomes)

    await outcomes.wait_for(1)

    assert outcomes.kinds == [OutcomeKind.FAILED]
    assert "timed out" in outcomes.items[0].reason


@pytest.mark.asyncio
async def test_busy_local_port_reports_failed(echo_port, entry):
    outcomes = Outcomes()
    driver = make_driver(LocalTransport(echo_port))

    blocker = await asyncio.start_server(lambda r, w: None, HOST, 0)
    busy = blocker.sockets[0].getsockname()[1]
    try:
        driver.start(entry, busy, 1, outcomes)
        await outcomes.wait_for(1)
    finally:
        blocker.close()
        await blocker.wait_closed()

    assert outcomes.kinds == [OutcomeKind.FAILED]
    assert "Cannot listen" in outcomes.items[0].reason


@pytest.mark.asyncio
async def test_stream_open_failure_fails_tunnel(entry, local_port):
    outcomes = Outcomes()
    transport = LocalTransport(1, stream_error=SetupError("pod went away"))
    driver = make_driver(transport)
    handle = driver.start(entry, local_port, 1, outcomes)
    await outcomes.wait_for(1)

    _, writer = await asyncio.open_connection(HOST, local_port)
    await outcomes.wait_for(2)
    writer.close()

    assert outcomes.kinds == [OutcomeKind.ACTIVE, OutcomeKind.FAILED]
    assert "pod went away" in outcomes.items[1].reason
    assert await driver.wait_closed(handle, 2)
    assert is_port_free(HOST, local_port)


@pytest.mark.asyncio
async def test_remote_error_after_stream_fails_tunnel(echo_port, entry, local_port):
    outcomes = Outcomes()
    transport = LocalTransport(echo_port, remote_error="lost connection to pod")
    driver = make_driver(transport)
    handle = driver.start(entry, local_port, 1, outcomes)
    await outcomes.wait_for(1)

    reader, writer = await asyncio.open_connection(HOST, local_port)
    writer.write(b"x")
    writer.write_eof()
    await asyncio.wait_for(reader.read(), 2)
    writer.close()

    await outcomes.wait_for(2)
    assert outcomes.kinds == [OutcomeKind.ACTIVE, OutcomeKind.FAILED]
    assert outcomes.items[1].reason == "Remote stream error: lost connection to pod"
    assert await driver.wait_closed(handle, 2)


class ReadyTransport(Transport):
    async def prepare(self, entry):
        return TunnelTarget(namespace=entry.namespace, pod="echo-0", port=1)


@pytest.mark.asyncio
@pytest.mark.parametrize("steps", range(12))
async def test_cancel_at_any_startup_step_releases_port(entry, steps):
    local_port = find_free_port(HOST)
    outcomes = Outcomes()
    driver = make_driver(ReadyTransport())
    handle = driver.start(entry, local_port, 1, outcomes)
    for _ in range(steps):
        await asyncio.sleep(0)

    driver.cancel(handle)
    assert await driver.wait_closed(handle, 2)

    assert is_port_free(HOST, local_port)
    assert outcomes.kinds[-1] == OutcomeKind.STOPPED
    assert outcomes.kinds.count(OutcomeKind.STOPPED) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("protocol", ["UDP", "SCTP"])
async def test_non_tcp_port_fails_before_binding(protocol, local_port):
    outcomes = Outcomes()
    transport = LocalTransport(1)
    driver = make_driver(transport)
    udp = PortEntry(
        service="dns", namespace="default", remote_port=53, protocol=protocol
    )
    handle = driver.start(udp, local_port, 1, outcomes)

    await outcomes.wait_for(1)
    assert await driver.wait_closed(handle, 2)

    assert outcomes.kinds == [OutcomeKind.FAILED]
    assert outcomes.items[0].reason == f"{protocol} ports cannot be forwarded"
    assert transport.prepared == 0
    assert is_port_free(HOST, local_port)
