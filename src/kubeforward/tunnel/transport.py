"""
Tunnel transports.

A transport turns a port entry into a target once per tunnel (prepare) and
then opens one remote byte stream per accepted local connection
(open_stream). The Kubernetes transport uses the API server's pod
portforward subresource through kubernetes.stream.portforward, which hands
back a socketpair end served by a background websocket thread.
"""

import asyncio
import socket
from dataclasses import dataclass, field
from typing import Callable

from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward

from kubeforward.discovery.snapshot import SnapshotProvider, TunnelTarget
from kubeforward.exceptions import SetupError
from kubeforward.models.entries import PortEntry
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)


def _no_error() -> str | None:
    return None


@dataclass
class RemoteStream:
    """
    One remote byte stream.

    Attributes:
        reader: Bytes coming from the remote target.
        writer: Bytes going to the remote target.
        error: Returns the transport-level error once the stream has ended,
            or None if it ended cleanly.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    error: Callable[[], str | None] = field(default=_no_error)


class Transport:
    """Interface of a tunnel transport."""

    async def prepare(self, entry: PortEntry) -> TunnelTarget:
        raise NotImplementedError

    async def open_stream(self, target: TunnelTarget) -> RemoteStream:
        raise NotImplementedError


class KubernetesTransport(Transport):
    """Forward through the pod portforward API of the cluster."""

    def __init__(self, provider: SnapshotProvider):
        self.provider = provider

    async def prepare(self, entry: PortEntry) -> TunnelTarget:
        return await self.provider.resolve_target(entry)

    async def open_stream(self, target: TunnelTarget) -> RemoteStream:
        opening = asyncio.ensure_future(
            asyncio.to_thread(self._open_portforward, target)
        )
        try:
            pf, pf_sock = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; close what it opens
            opening.add_done_callback(_close_abandoned)
            raise

        # Take our own descriptor so asyncio owns a plain socket object
        raw = socket.socket(fileno=pf_sock.detach())
        raw.setblocking(False)
        try:
            reader, writer = await asyncio.open_connection(sock=raw)
        except BaseException:
            raw.close()
            raise

        def error() -> str | None:
            return pf.error(target.port)

        return RemoteStream(reader=reader, writer=writer, error=error)

    def _open_portforward(self, target: TunnelTarget):
        try:
            pf = portforward(
                self.provider.core_api.connect_get_namespaced_pod_portforward,
                target.pod,
                target.namespace,
                ports=str(target.port),
            )
            return pf, pf.socket(target.port)
        except ApiException as e:
            raise SetupError(
                f"Portforward to {target.pod}:{target.port} rejected: "
                f"HTTP {e.status} {e.reason}"
            ) from e
        except Exception as e:
            # websocket-client and urllib3 raise their own hierarchies here
            raise SetupError(
                f"Portforward to {target.pod}:{target.port} failed: {e}"
            ) from e


def _close_abandoned(opening: asyncio.Future) -> None:
    """Close a portforward socket whose opener was cancelled."""
    if opening.cancelled() or opening.exception() is not None:
        return
    _, pf_sock = opening.result()
    # The portforward proxy thread exits once its local socket is closed
    pf_sock.close()
    logger.debug("Closed portforward stream opened after cancellation")
