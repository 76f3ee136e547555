from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

ATHENZ_GROUP = "athenz.io"
ATHENZ_VERSION = "v1"
ATHENZ_PLURAL = "athenzdomains"
ATHENZ_KIND = "AthenzDomain"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "athenz-syncer"
NAMESPACE_ANNOTATION = "athenz.io/namespace"


class ConflictError(RuntimeError):
    """Raised when an update lost a resourceVersion check-and-set race."""


def load_kube_configuration(in_cluster: bool = True, kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    With ``in_cluster`` the service account config is tried first (running
    inside a pod), falling back to ``kubeconfig`` for development. Without it
    the kubeconfig file is loaded directly.
    """
    if in_cluster:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
            return
        except ConfigException:
            LOGGER.info("In-cluster configuration unavailable, falling back to kubeconfig")
    config.load_kube_config(config_file=kubeconfig or None)
    LOGGER.info("Loaded kubeconfig %s", kubeconfig or "(default)")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def namespace_exists(core_api: CoreV1Api, name: str) -> bool:
    """Return False when the namespace is gone or already terminating."""
    try:
        namespace = core_api.read_namespace(name=name)
    except ApiException as exc:
        if exc.status == 404:
            return False
        raise
    phase = getattr(getattr(namespace, "status", None), "phase", None)
    return phase != "Terminating"


def resource_version_of(obj: dict[str, Any] | None) -> str | None:
    if not obj:
        return None
    return (obj.get("metadata") or {}).get("resourceVersion")


class AthenzDomainStore:
    """CRUD on the cluster-scoped ``AthenzDomain`` resource.

    Objects are plain dicts as returned by ``CustomObjectsApi``. Updates send
    the stored ``resourceVersion`` so the API server rejects a stale write
    with ``409``, surfaced here as :class:`ConflictError`.
    """

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def _args(self) -> dict[str, str]:
        return {"group": ATHENZ_GROUP, "version": ATHENZ_VERSION, "plural": ATHENZ_PLURAL}

    def get(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_cluster_custom_object(name=name, **self._args())
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.create_cluster_custom_object(body=body, **self._args())

    def replace(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            return self.custom_api.replace_cluster_custom_object(name=name, body=body, **self._args())
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(f"AthenzDomain {name} was modified concurrently") from exc
            raise

    def delete(self, name: str) -> bool:
        """Delete ``name``; returns False if it was already gone."""
        try:
            self.custom_api.delete_cluster_custom_object(name=name, **self._args())
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True


def build_athenz_domain(
    name: str,
    spec: dict[str, Any],
    namespace: str | None,
    sync_time: str,
    resource_version: str | None = None,
) -> dict[str, Any]:
    """Build an ``AthenzDomain`` body ready for create or replace."""
    metadata: dict[str, Any] = {
        "name": name,
        "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
    }
    if namespace is not None:
        metadata["annotations"] = {NAMESPACE_ANNOTATION: namespace}
    if resource_version is not None:
        metadata["resourceVersion"] = resource_version

    return {
        "apiVersion": f"{ATHENZ_GROUP}/{ATHENZ_VERSION}",
        "kind": ATHENZ_KIND,
        "metadata": metadata,
        "spec": spec,
        "status": {"lastSyncTime": sync_time},
    }
