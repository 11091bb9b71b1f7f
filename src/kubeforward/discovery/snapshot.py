"""
Namespace snapshot provider backed by the Kubernetes API.

Reads the services of a namespace and their ports once at startup, and
resolves a service port to a concrete (pod, container port) target when a
tunnel is opened. All kubernetes client calls are blocking and are run in
worker threads by the async wrappers.
"""

import asyncio
from dataclasses import dataclass

import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from kubeforward.exceptions import (
    ClusterConnectionError,
    NamespaceNotFoundError,
    SetupError,
)
from kubeforward.models.entries import PortEntry, ServiceInfo, ServicePort
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TunnelTarget:
    """Concrete pod and container port a port entry forwards to."""

    namespace: str
    pod: str
    port: int


# =============================================================================
# Client Setup
# =============================================================================


def load_core_api(context: str | None = None) -> k8s_client.CoreV1Api:
    """
    Build a CoreV1Api from the local kubeconfig, or the in-cluster config.

    Raises:
        ClusterConnectionError: No usable configuration was found.
    """
    try:
        k8s_config.load_kube_config(context=context)
        logger.debug(f"Loaded kubeconfig (context={context or 'current'})")
    except (ConfigException, OSError) as e:
        if context:
            raise ClusterConnectionError(
                f"Cannot load kubeconfig context '{context}': {e}"
            ) from e
        try:
            k8s_config.load_incluster_config()
            logger.debug("Loaded in-cluster configuration")
        except ConfigException:
            raise ClusterConnectionError(f"No usable kubeconfig: {e}") from e
    return k8s_client.CoreV1Api()


def current_namespace(context: str | None = None) -> str:
    """Namespace of the selected kubeconfig context, 'default' if unset."""
    try:
        contexts, active = k8s_config.list_kube_config_contexts()
    except (ConfigException, OSError):
        return "default"
    if context:
        active = next((c for c in contexts if c.get("name") == context), active)
    if not active:
        return "default"
    return active.get("context", {}).get("namespace") or "default"


# =============================================================================
# Snapshot Provider
# =============================================================================


class SnapshotProvider:
    """Read-only view of a namespace's services through a CoreV1Api."""

    def __init__(self, core_api: k8s_client.CoreV1Api):
        self.core_api = core_api

    @classmethod
    def from_kubeconfig(cls, context: str | None = None) -> "SnapshotProvider":
        return cls(load_core_api(context))

    async def fetch_namespace(self, name: str) -> list[ServiceInfo]:
        return await asyncio.to_thread(self.fetch_namespace_sync, name)

    def fetch_namespace_sync(self, name: str) -> list[ServiceInfo]:
        """
        List the services of a namespace with their ports.

        Services without ports are omitted. Result is ordered by service name,
        ports by remote port.

        Raises:
            NamespaceNotFoundError: The namespace does not exist.
            ClusterConnectionError: The control plane could not be reached.
        """
        self._check_namespace(name)
        try:
            result = self.core_api.list_namespaced_service(namespace=name)
        except ApiException as e:
            if e.status == 404:
                raise NamespaceNotFoundError(name) from e
            raise ClusterConnectionError(
                f"Failed to list services in '{name}': HTTP {e.status} {e.reason}"
            ) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterConnectionError(f"Cannot reach the cluster: {e}") from e

        services = []
        for svc in result.items:
            info = _service_info(svc, name)
            if info.ports:
                services.append(info)
        services.sort(key=lambda s: s.name)
        logger.info(
            f"Discovered {len(services)} services with ports in namespace '{name}'"
        )
        return services

    def _check_namespace(self, name: str) -> None:
        try:
            self.core_api.read_namespace(name=name)
        except ApiException as e:
            if e.status == 404:
                raise NamespaceNotFoundError(name) from e
            if e.status == 403:
                # Namespaces are cluster scoped; listing services may still work
                logger.debug(f"Not allowed to read namespace '{name}', continuing")
                return
            raise ClusterConnectionError(
                f"Failed to read namespace '{name}': HTTP {e.status} {e.reason}"
            ) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterConnectionError(f"Cannot reach the cluster: {e}") from e

    # -------------------------------------------------------------------------
    # Target Resolution
    # -------------------------------------------------------------------------

    async def resolve_target(self, entry: PortEntry) -> TunnelTarget:
        return await asyncio.to_thread(self.resolve_target_sync, entry)

    def resolve_target_sync(self, entry: PortEntry) -> TunnelTarget:
        """
        Pick a running pod behind the service and the container port to use.

        Pods matching the service selector are preferred in this order:
        ready before not ready, then by name. Services without a selector fall
        back to pods whose name starts with the service name.

        Raises:
            SetupError: No suitable pod, or the named target port is unknown.
        """
        try:
            if entry.selector:
                selector = ",".join(f"{k}={v}" for k, v in entry.selector)
                pods = self.core_api.list_namespaced_pod(
                    namespace=entry.namespace, label_selector=selector
                ).items
            else:
                pods = [
                    pod
                    for pod in self.core_api.list_namespaced_pod(
                        namespace=entry.namespace
                    ).items
                    if pod.metadata.name.startswith(entry.service)
                ]
        except ApiException as e:
            raise SetupError(
                f"Failed to list pods for {entry.service}: HTTP {e.status} {e.reason}"
            ) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise SetupError(f"Cannot reach the cluster: {e}") from e

        running = [
            pod
            for pod in pods
            if pod.status
            and pod.status.phase == "Running"
            and not pod.metadata.deletion_timestamp
        ]
        if not running:
            raise SetupError(f"No running pod found for service {entry.service}")

        running.sort(key=lambda pod: (not _is_ready(pod), pod.metadata.name))
        pod = running[0]
        port = _container_port(pod, entry)
        logger.debug(
            f"[Resolve {entry.display_name}] pod={pod.metadata.name} port={port}"
        )
        return TunnelTarget(
            namespace=entry.namespace, pod=pod.metadata.name, port=port
        )


# =============================================================================
# Helpers
# =============================================================================


def _service_info(svc, namespace: str) -> ServiceInfo:
    spec = svc.spec
    ports = []
    for port in (spec.ports if spec and spec.ports else []):
        ports.append(
            ServicePort(
                remote_port=port.port,
                label=port.name or "",
                protocol=port.protocol or "TCP",
                target_port=_normalize_target_port(port.target_port),
            )
        )
    ports.sort(key=lambda p: (p.remote_port, p.protocol))
    selector = tuple(sorted((spec.selector or {}).items())) if spec else ()
    return ServiceInfo(
        name=svc.metadata.name,
        namespace=namespace,
        ports=tuple(ports),
        selector=selector,
    )


def _normalize_target_port(value) -> int | str | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text) if text.isdigit() else text


def _is_ready(pod) -> bool:
    for condition in pod.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _container_port(pod, entry: PortEntry) -> int:
    target = entry.target_port
    if target is None:
        return entry.remote_port
    if isinstance(target, int):
        return target
    for container in pod.spec.containers or []:
        for port in container.ports or []:
            if port.name == target:
                return port.container_port
    raise SetupError(
        f"Named port '{target}' not found in pod {pod.metadata.name}"
    )
