"""Shared fixtures: a namespace snapshot and a scriptable fake driver."""

from __future__ import annotations

import itertools

import pytest

from kubeforward.config import ForwardConfig
from kubeforward.models.entries import DriverOutcome, ServiceInfo, ServicePort
from kubeforward.models.enums import OutcomeKind
from kubeforward.session.manager import SessionManager
from kubeforward.session.ports import LocalPortAllocator


class FakeHandle:
    """Driver handle whose outcomes are reported by the test."""

    def __init__(self, entry, local_port, generation, report):
        self.entry = entry
        self.local_port = local_port
        self.generation = generation
        self.report = report
        self.cancelled = False
        self.done = False

    def _send(self, kind: OutcomeKind, reason: str | None = None) -> None:
        self.report(DriverOutcome(self.entry.key, self.generation, kind, reason))

    def ready(self) -> None:
        self._send(OutcomeKind.ACTIVE)

    def fail(self, reason: str = "connection refused") -> None:
        self._send(OutcomeKind.FAILED, reason)


class FakeDriver:
    """Records started handles; cancel reports STOPPED like the real driver."""

    def __init__(self):
        self.handles: list[FakeHandle] = []

    def start(self, entry, local_port, generation, report) -> FakeHandle:
        handle = FakeHandle(entry, local_port, generation, report)
        self.handles.append(handle)
        return handle

    def cancel(self, handle: FakeHandle) -> None:
        handle.cancelled = True
        handle.done = True
        handle._send(OutcomeKind.STOPPED)

    async def wait_closed(self, handle, timeout=None) -> bool:
        return True

    def for_key(self, key) -> list[FakeHandle]:
        return [h for h in self.handles if h.entry.key == key]

    def live(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]


API_8080 = ("api", 8080, "TCP")
API_9090 = ("api", 9090, "TCP")
DB_5432 = ("db", 5432, "TCP")
WEB_80 = ("web", 80, "TCP")
WEB_443 = ("web", 443, "TCP")
WEB_8443 = ("web", 8443, "TCP")


@pytest.fixture
def services() -> list[ServiceInfo]:
    # Deliberately unordered
    return [
        ServiceInfo(
            name="web",
            namespace="default",
            ports=(
                ServicePort(443, "https"),
                ServicePort(80, "http"),
                ServicePort(8443, "admin"),
            ),
            selector=(("app", "web"),),
        ),
        ServiceInfo(
            name="api",
            namespace="default",
            ports=(ServicePort(9090, "metrics"), ServicePort(8080, "http")),
            selector=(("app", "api"),),
        ),
        ServiceInfo(
            name="db",
            namespace="default",
            ports=(ServicePort(5432, "postgres"),),
            selector=(("app", "db"),),
        ),
    ]


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def allocator() -> LocalPortAllocator:
    counter = itertools.count(40000)
    return LocalPortAllocator(
        probe=lambda host, port: True,
        ephemeral=lambda host: next(counter),
    )


@pytest.fixture
def cfg() -> ForwardConfig:
    return ForwardConfig()


@pytest.fixture
async def manager(services, driver, allocator, cfg):
    mgr = SessionManager(services, driver, allocator=allocator, cfg=cfg)
    await mgr.start()
    yield mgr
    await mgr.stop()
