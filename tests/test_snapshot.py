"""Tests for namespace discovery and target resolution with a mocked CoreV1Api."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from kubeforward.discovery.snapshot import SnapshotProvider, TunnelTarget
from kubeforward.exceptions import (
    ClusterConnectionError,
    NamespaceNotFoundError,
    SetupError,
)
from kubeforward.models.entries import PortEntry


def svc(name, ports, selector=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(
            ports=[
                SimpleNamespace(
                    port=p[0],
                    name=p[1],
                    protocol="TCP",
                    target_port=p[2] if len(p) > 2 else None,
                )
                for p in ports
            ],
            selector=selector,
        ),
    )


def pod(name, phase="Running", ready=True, deleting=False, container_ports=()):
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, deletion_timestamp="now" if deleting else None
        ),
        status=SimpleNamespace(
            phase=phase,
            conditions=[
                SimpleNamespace(type="Ready", status="True" if ready else "False")
            ],
        ),
        spec=SimpleNamespace(
            containers=[
                SimpleNamespace(
                    ports=[
                        SimpleNamespace(name=n, container_port=p)
                        for n, p in container_ports
                    ]
                )
            ]
        ),
    )


@pytest.fixture
def core_api():
    api = MagicMock()
    api.read_namespace.return_value = SimpleNamespace()
    return api


@pytest.fixture
def provider(core_api):
    return SnapshotProvider(core_api)


# =============================================================================
# Namespace Snapshot
# =============================================================================


def test_fetch_namespace_lists_services_and_ports(provider, core_api):
    core_api.list_namespaced_service.return_value = SimpleNamespace(
        items=[
            svc("web", [(443, "https", 8443), (80, "http", "http")], {"app": "web"}),
            svc("api", [(8080, "http", "8080")], {"app": "api"}),
            svc("headless", []),
        ]
    )

    services = provider.fetch_namespace_sync("default")

    assert [s.name for s in services] == ["api", "web"]
    web = services[1]
    assert [p.remote_port for p in web.ports] == [80, 443]
    assert [p.target_port for p in web.ports] == ["http", 8443]
    assert services[0].ports[0].target_port == 8080
    assert web.label_selector == "app=web"
    core_api.list_namespaced_service.assert_called_once_with(namespace="default")


def test_missing_namespace_raises(provider, core_api):
    core_api.read_namespace.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(NamespaceNotFoundError, match="nope"):
        provider.fetch_namespace_sync("nope")


def test_forbidden_namespace_read_still_lists_services(provider, core_api):
    core_api.read_namespace.side_effect = ApiException(status=403, reason="Forbidden")
    core_api.list_namespaced_service.return_value = SimpleNamespace(
        items=[svc("db", [(5432, "pg")])]
    )

    assert [s.name for s in provider.fetch_namespace_sync("team")] == ["db"]


def test_unreachable_cluster_raises(provider, core_api):
    core_api.read_namespace.side_effect = urllib3.exceptions.MaxRetryError(
        None, "/api/v1/namespaces/default", reason="connection refused"
    )

    with pytest.raises(ClusterConnectionError):
        provider.fetch_namespace_sync("default")


def test_service_list_error_raises(provider, core_api):
    core_api.list_namespaced_service.side_effect = ApiException(
        status=500, reason="Internal Server Error"
    )

    with pytest.raises(ClusterConnectionError, match="HTTP 500"):
        provider.fetch_namespace_sync("default")


@pytest.mark.asyncio
async def test_fetch_namespace_async(provider, core_api):
    core_api.list_namespaced_service.return_value = SimpleNamespace(items=[])

    assert await provider.fetch_namespace("default") == []


# =============================================================================
# Target Resolution
# =============================================================================


def entry(target_port=None, selector=(("app", "web"),)):
    return PortEntry(
        service="web",
        namespace="default",
        remote_port=80,
        target_port=target_port,
        selector=selector,
    )


def test_resolve_prefers_ready_running_pods(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[
            pod("web-a", ready=False),
            pod("web-b", phase="Pending"),
            pod("web-c", deleting=True),
            pod("web-d"),
        ]
    )

    target = provider.resolve_target_sync(entry(target_port=8080))

    assert target == TunnelTarget(namespace="default", pod="web-d", port=8080)
    core_api.list_namespaced_pod.assert_called_once_with(
        namespace="default", label_selector="app=web"
    )


def test_resolve_without_target_port_uses_service_port(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[pod("web-0")])

    assert provider.resolve_target_sync(entry()).port == 80


def test_resolve_named_target_port(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[pod("web-0", container_ports=[("metrics", 9100), ("http", 8000)])]
    )

    assert provider.resolve_target_sync(entry(target_port="http")).port == 8000


def test_resolve_unknown_named_port_fails(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[pod("web-0")])

    with pytest.raises(SetupError, match="Named port 'grpc'"):
        provider.resolve_target_sync(entry(target_port="grpc"))


def test_resolve_without_running_pod_fails(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[pod("web-0", phase="Failed")]
    )

    with pytest.raises(SetupError, match="No running pod"):
        provider.resolve_target_sync(entry())


def test_resolve_without_selector_matches_pod_name(provider, core_api):
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[pod("other-0"), pod("web-1"), pod("web-0")]
    )

    target = provider.resolve_target_sync(entry(selector=()))

    assert target.pod == "web-0"
    core_api.list_namespaced_pod.assert_called_once_with(namespace="default")


def test_resolve_api_error_is_setup_error(provider, core_api):
    core_api.list_namespaced_pod.side_effect = ApiException(
        status=403, reason="Forbidden"
    )

    with pytest.raises(SetupError, match="HTTP 403"):
        provider.resolve_target_sync(entry())
