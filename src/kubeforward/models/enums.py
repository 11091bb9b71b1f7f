"""
Enumeration types for kubeforward.

This module defines the enumeration types used throughout kubeforward
for tunnel status tracking, driver outcomes, and configuration options.
"""

from enum import Enum


# =============================================================================
# Tunnel-Related Enums
# =============================================================================


class TunnelStatus(str, Enum):
    """
    Observed status of a port entry's tunnel.

    State transitions:
        IDLE -> CONNECTING (first toggle)
        CONNECTING -> ACTIVE (listener bound, ready for local connections)
        CONNECTING/ACTIVE -> STOPPED (toggled off)
        CONNECTING/ACTIVE -> FAILED (setup or stream error)
        STOPPED/FAILED -> CONNECTING (toggled on again)
    """

    IDLE = "idle"  # Never requested
    CONNECTING = "connecting"  # Driver started, not ready yet
    ACTIVE = "active"  # Local listener accepting connections
    STOPPED = "stopped"  # Cancelled by the user
    FAILED = "failed"  # Setup or stream error, see last_error

    @property
    def is_on(self) -> bool:
        """Whether the status belongs to the "forwarding" path."""
        return self in (TunnelStatus.CONNECTING, TunnelStatus.ACTIVE)


class OutcomeKind(str, Enum):
    """
    Kind of outcome reported by a tunnel driver.

    ACTIVE is not terminal; it is followed by exactly one of STOPPED or FAILED.
    """

    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"


class TiePolicy(str, Enum):
    """
    How toggle-all resolves a service with as many ports on as off.
    """

    ON = "on"
    OFF = "off"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels for kubeforward.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
        - ERROR: Only errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
