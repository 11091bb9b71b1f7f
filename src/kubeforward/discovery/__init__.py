"""
Namespace discovery through the Kubernetes API.
"""

from kubeforward.discovery.snapshot import (
    SnapshotProvider,
    TunnelTarget,
    current_namespace,
    load_core_api,
)

__all__ = [
    "SnapshotProvider",
    "TunnelTarget",
    "current_namespace",
    "load_core_api",
]
