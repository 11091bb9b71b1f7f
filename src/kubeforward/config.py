"""
Runtime configuration for kubeforward.

This module defines the configuration dataclass for the forwarding session,
providing a centralized place for all configurable parameters.

Configuration can be modified at runtime by importing the global config
instance and updating its attributes before starting the session manager.
The CLI does this from its options.

Usage:
    from kubeforward.config import config

    config.NAMESPACE = "staging"
    config.LOG_LEVEL = LogLevel.DEBUG
"""

from dataclasses import dataclass

from kubeforward.models.enums import LogLevel, TiePolicy


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass
class ForwardConfig:
    """
    Forwarding session configuration.

    Attributes:
        NAMESPACE: Namespace to inspect (None uses the kubeconfig context's).
        CONTEXT: kubeconfig context name (None uses the current context).
        LOCAL_BIND_HOST: Address local listeners bind to.
        PREFER_REMOTE_PORT: Try the service port number as local port first.
        SETUP_TIMEOUT_SECONDS: Bound on resolving a pod and opening a stream.
        CANCEL_TIMEOUT_SECONDS: Bound on waiting for a cancelled driver.
        MAX_AUTO_RETRIES: Automatic restarts after a failure (0 = sticky).
        RETRY_BACKOFF_SECONDS: Delay before an automatic restart.
        TOGGLE_ALL_TIE_POLICY: Toggle-all target when on/off counts are equal.
        LOG_LEVEL: Logging verbosity level.
        LOG_FILE: Log file used while the terminal UI is running.
    """

    # -------------------------------------------------------------------------
    # Cluster Configuration
    # -------------------------------------------------------------------------

    NAMESPACE: str | None = None
    CONTEXT: str | None = None

    # -------------------------------------------------------------------------
    # Local Listener Configuration
    # -------------------------------------------------------------------------

    LOCAL_BIND_HOST: str = "127.0.0.1"
    # Forward service port N to localhost:N when N is free
    PREFER_REMOTE_PORT: bool = True
    PIPE_CHUNK_SIZE: int = 65536

    # -------------------------------------------------------------------------
    # Timing Configuration
    # -------------------------------------------------------------------------

    SETUP_TIMEOUT_SECONDS: float = 15.0
    CANCEL_TIMEOUT_SECONDS: float = 5.0

    # -------------------------------------------------------------------------
    # Session Policy
    # -------------------------------------------------------------------------

    # 0 keeps FAILED sticky until the user toggles again
    MAX_AUTO_RETRIES: int = 0
    RETRY_BACKOFF_SECONDS: float = 2.0
    TOGGLE_ALL_TIE_POLICY: TiePolicy = TiePolicy.ON

    # Events buffered per state subscriber before it is resynchronised
    SUBSCRIBER_QUEUE_SIZE: int = 256

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO
    LOG_FILE: str = ""

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def get_namespace(self) -> str:
        """Namespace to display when none was resolved from the cluster."""
        return self.NAMESPACE or "default"


# Global configuration instance
config = ForwardConfig()
