"""
Data models for kubeforward.
"""

from kubeforward.models.entries import (
    DriverOutcome,
    EntryKey,
    PortEntry,
    ServiceInfo,
    ServicePort,
    SessionView,
    TunnelSession,
    entries_from_services,
)
from kubeforward.models.enums import LogLevel, OutcomeKind, TiePolicy, TunnelStatus

__all__ = [
    "DriverOutcome",
    "EntryKey",
    "LogLevel",
    "OutcomeKind",
    "PortEntry",
    "ServiceInfo",
    "ServicePort",
    "SessionView",
    "TiePolicy",
    "TunnelSession",
    "TunnelStatus",
    "entries_from_services",
]
