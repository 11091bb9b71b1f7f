"""kubeforward exception classes."""


class ForwardError(Exception):
    """Base exception for kubeforward."""

    pass


# =============================================================================
# Discovery
# =============================================================================


class DiscoveryError(ForwardError):
    """Namespace snapshot unavailable. Fatal at startup."""

    pass


class NamespaceNotFoundError(DiscoveryError):
    """Namespace does not exist."""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(f"Namespace not found: {namespace}")


class ClusterConnectionError(DiscoveryError):
    """Control plane unreachable or kubeconfig unusable."""

    pass


# =============================================================================
# Tunnels
# =============================================================================


class SetupError(ForwardError):
    """Tunnel could not bind, resolve its target, or open a stream."""

    pass


class StreamError(ForwardError):
    """Tunnel broke after becoming active."""

    pass


class RaceDiscard(ForwardError):
    """Outcome arrived for a superseded generation."""

    def __init__(self, key, generation: int, current: int):
        self.key = key
        self.generation = generation
        self.current = current
        super().__init__(
            f"Outcome for {key} generation {generation} discarded "
            f"(current generation {current})"
        )
