"""
Data models for the namespace snapshot and tunnel sessions.

Port entries and services are immutable once the namespace snapshot is taken.
Session views are immutable rows handed out by the state publisher.
"""

from dataclasses import dataclass, field
from datetime import datetime

from kubeforward.models.enums import OutcomeKind, TunnelStatus

# (service name, remote port, protocol label)
EntryKey = tuple[str, int, str]


# =============================================================================
# Namespace Snapshot
# =============================================================================


@dataclass(frozen=True)
class ServicePort:
    """One port exposed by a service."""

    remote_port: int
    label: str = ""
    protocol: str = "TCP"
    # Service targetPort: container port number or named port
    target_port: int | str | None = None


@dataclass(frozen=True)
class ServiceInfo:
    """A service and its exposed ports, ordered by remote port."""

    name: str
    namespace: str
    ports: tuple[ServicePort, ...] = ()
    selector: tuple[tuple[str, str], ...] = ()

    @property
    def label_selector(self) -> str:
        """Selector rendered for the Kubernetes list API."""
        return ",".join(f"{k}={v}" for k, v in self.selector)


@dataclass(frozen=True)
class PortEntry:
    """
    One exposed (service, remote port) pair of the namespace snapshot.

    Attributes:
        service: Service name.
        namespace: Namespace the service lives in.
        remote_port: Service port number.
        protocol: Protocol label (TCP, UDP, SCTP).
        label: Port name from the service spec, may be empty.
        target_port: Service targetPort (number or named port).
        selector: Service pod selector as sorted key/value pairs.
    """

    service: str
    namespace: str
    remote_port: int
    protocol: str = "TCP"
    label: str = ""
    target_port: int | str | None = None
    selector: tuple[tuple[str, str], ...] = ()

    @property
    def key(self) -> EntryKey:
        return (self.service, self.remote_port, self.protocol)

    @property
    def display_name(self) -> str:
        return f"{self.service}:{self.remote_port}"

    @property
    def sort_key(self) -> tuple[str, int, str]:
        return (self.service, self.remote_port, self.protocol)


def entries_from_services(services: list[ServiceInfo]) -> list[PortEntry]:
    """Flatten a namespace snapshot into port entries ordered by (service, port)."""
    entries = [
        PortEntry(
            service=svc.name,
            namespace=svc.namespace,
            remote_port=port.remote_port,
            protocol=port.protocol,
            label=port.label,
            target_port=port.target_port,
            selector=svc.selector,
        )
        for svc in services
        for port in svc.ports
    ]
    entries.sort(key=lambda e: e.sort_key)
    return entries


# =============================================================================
# Sessions
# =============================================================================


@dataclass(frozen=True)
class DriverOutcome:
    """Outcome message sent by a tunnel driver, tagged with its generation."""

    key: EntryKey
    generation: int
    kind: OutcomeKind
    reason: str | None = None


@dataclass(frozen=True)
class SessionView:
    """
    Immutable published row for one port entry.

    Combines desired state (requested, local_port) with actual state
    (status, last_error) as seen by the control loop at one version.
    """

    entry: PortEntry
    status: TunnelStatus = TunnelStatus.IDLE
    last_error: str | None = None
    local_port: int | None = None
    requested: bool = False
    generation: int = 0
    started_at: datetime | None = None

    @property
    def key(self) -> EntryKey:
        return self.entry.key


@dataclass
class TunnelSession:
    """
    Mutable per-entry record owned by the session manager's control loop.

    Never handed to drivers or readers; the publisher receives SessionView
    copies built by to_view().
    """

    entry: PortEntry
    requested: bool = False
    local_port: int | None = None
    status: TunnelStatus = TunnelStatus.IDLE
    generation: int = 0
    started_at: datetime | None = None
    last_error: str | None = None
    retries: int = 0
    handle: object | None = field(default=None, repr=False)

    def to_view(self) -> SessionView:
        return SessionView(
            entry=self.entry,
            status=self.status,
            last_error=self.last_error,
            local_port=self.local_port,
            requested=self.requested,
            generation=self.generation,
            started_at=self.started_at,
        )
