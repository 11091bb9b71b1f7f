"""
Tunnel system for forwarding local ports to pods.

This module provides the driver that owns one local listener per tunnel
and the transports it forwards through.
"""

from kubeforward.tunnel.driver import DriverHandle, TunnelDriver
from kubeforward.tunnel.pipe import bind_reader_writer, splice
from kubeforward.tunnel.transport import (
    KubernetesTransport,
    RemoteStream,
    Transport,
)

__all__ = [
    "DriverHandle",
    "KubernetesTransport",
    "RemoteStream",
    "Transport",
    "TunnelDriver",
    "bind_reader_writer",
    "splice",
]
