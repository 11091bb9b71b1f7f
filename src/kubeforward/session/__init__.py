"""
Tunnel session management: desired state, generations and published views.
"""

from kubeforward.session.manager import SessionManager
from kubeforward.session.ports import LocalPortAllocator, find_free_port, is_port_free
from kubeforward.session.publisher import (
    EntryChanged,
    SnapshotEvent,
    StateEvent,
    StatePublisher,
)

__all__ = [
    "EntryChanged",
    "LocalPortAllocator",
    "SessionManager",
    "SnapshotEvent",
    "StateEvent",
    "StatePublisher",
    "find_free_port",
    "is_port_free",
]
