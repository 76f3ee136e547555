from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from syncer.src.kube import (
    MANAGED_BY_LABEL,
    NAMESPACE_ANNOTATION,
    AthenzDomainStore,
    ConflictError,
    build_athenz_domain,
    build_clients,
    load_kube_configuration,
    namespace_exists,
    resource_version_of,
)

CRD_ARGS = {"group": "athenz.io", "version": "v1", "plural": "athenzdomains"}


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("syncer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("syncer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    with (
        patch(
            "syncer.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("syncer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration(kubeconfig="/tmp/kubeconfig")

    mock_kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")


def test_load_kube_configuration_out_of_cluster_skips_service_account() -> None:
    with (
        patch("syncer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("syncer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration(in_cluster=False)

    mock_incluster.assert_not_called()
    mock_kubeconfig.assert_called_once_with(config_file=None)


def test_build_clients_returns_tuple() -> None:
    with patch("syncer.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, custom = build_clients()

    assert core.name == "core"
    assert custom.name == "custom"


def test_namespace_exists_handles_missing_and_terminating() -> None:
    core_api = MagicMock()
    core_api.read_namespace.return_value = SimpleNamespace(status=SimpleNamespace(phase="Active"))
    assert namespace_exists(core_api, "search") is True

    core_api.read_namespace.return_value = SimpleNamespace(status=SimpleNamespace(phase="Terminating"))
    assert namespace_exists(core_api, "search") is False

    core_api.read_namespace.side_effect = ApiException(status=404, reason="Not Found")
    assert namespace_exists(core_api, "search") is False


def test_namespace_exists_propagates_other_errors() -> None:
    core_api = MagicMock()
    core_api.read_namespace.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        namespace_exists(core_api, "search")


def test_build_athenz_domain_body() -> None:
    body = build_athenz_domain(
        "sports.search",
        {"domain": "sports.search", "roles": {"admin": ["user.alice"]}},
        "sports-search",
        "2026-01-01T00:00:00Z",
        resource_version="12",
    )

    assert body["apiVersion"] == "athenz.io/v1"
    assert body["kind"] == "AthenzDomain"
    assert body["metadata"] == {
        "name": "sports.search",
        "labels": {MANAGED_BY_LABEL: "athenz-syncer"},
        "annotations": {NAMESPACE_ANNOTATION: "sports-search"},
        "resourceVersion": "12",
    }
    assert body["status"] == {"lastSyncTime": "2026-01-01T00:00:00Z"}
    assert resource_version_of(body) == "12"
    assert resource_version_of(None) is None


def test_store_get_returns_none_when_missing() -> None:
    custom_api = MagicMock()
    custom_api.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    assert AthenzDomainStore(custom_api).get("search") is None
    custom_api.get_cluster_custom_object.assert_called_once_with(name="search", **CRD_ARGS)


def test_store_replace_maps_conflict() -> None:
    custom_api = MagicMock()
    custom_api.replace_cluster_custom_object.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ConflictError, match="search"):
        AthenzDomainStore(custom_api).replace("search", {"metadata": {"name": "search"}})


def test_store_create_and_delete() -> None:
    custom_api = MagicMock()
    store = AthenzDomainStore(custom_api)
    body = {"metadata": {"name": "search"}}

    store.create(body)
    assert store.delete("search") is True

    custom_api.create_cluster_custom_object.assert_called_once_with(body=body, **CRD_ARGS)
    custom_api.delete_cluster_custom_object.assert_called_once_with(name="search", **CRD_ARGS)

    custom_api.delete_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    assert store.delete("search") is False
