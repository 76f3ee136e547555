from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from syncer.src.kube import ATHENZ_GROUP, ATHENZ_PLURAL, ATHENZ_VERSION
from syncer.src.metrics import METRICS
from syncer.src.naming import DomainMapper, ReconcileKey

NAMESPACES = "namespaces"
ATHENZ_DOMAINS = "athenzdomains"


class KeyQueue(Protocol):
    def add(self, key: ReconcileKey) -> None: ...


def _metadata_field(obj: Any, attr: str, key: str) -> str | None:
    """Read a metadata field from either a typed model or a plain dict."""
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get(key)
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, attr, None)


def object_name(obj: Any) -> str | None:
    return _metadata_field(obj, "name", "name")


def object_resource_version(obj: Any) -> str | None:
    return _metadata_field(obj, "resource_version", "resourceVersion")


def _list_items(result: Any) -> list[Any]:
    if isinstance(result, dict):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


class WatchSource:
    """Turns namespace and ``AthenzDomain`` changes into reconcile keys.

    Each resource gets its own list-then-watch loop on its own thread. The
    handlers only derive a :class:`ReconcileKey` and push it onto the queue;
    deciding what to write is left entirely to the reconciler so that an
    event and a resync go through the same code path.

    The set of tracked namespaces is maintained from the namespace stream
    and read by the resync ticker.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        queue: KeyQueue,
        mapper: DomainMapper,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.queue = queue
        self.mapper = mapper
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._namespaces: set[str] = set()
        self._namespaces_lock = threading.Lock()
        self._synced: set[str] = set()
        self._external_stop = threading.Event()
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def tracked_namespaces(self) -> list[str]:
        with self._namespaces_lock:
            return sorted(self._namespaces)

    def _enqueue(self, key: ReconcileKey | None) -> ReconcileKey | None:
        if key is not None:
            self.queue.add(key)
        return key

    def handle_namespace_event(self, event_type: str, namespace: Any) -> ReconcileKey | None:
        name = object_name(namespace)
        if not name or event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        key = self.mapper.key_for_namespace(name)
        if key is None:
            return None
        with self._namespaces_lock:
            if event_type == "DELETED":
                self._namespaces.discard(name)
            else:
                self._namespaces.add(name)
        return self._enqueue(key)

    def handle_domain_event(self, event_type: str, athenz_domain: Any) -> ReconcileKey | None:
        name = object_name(athenz_domain)
        if not name or event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        return self._enqueue(self.mapper.key_for_domain(name))

    def _seed_namespaces(self, listing: Any) -> None:
        names = {name for name in (object_name(item) for item in _list_items(listing)) if name}
        tracked = {name for name in names if self.mapper.key_for_namespace(name) is not None}
        with self._namespaces_lock:
            vanished = self._namespaces - tracked
            self._namespaces = tracked
        # Deletions missed while the watch was down still need a reconcile.
        for name in sorted(tracked | vanished):
            self._enqueue(self.mapper.key_for_namespace(name))
        if vanished:
            self.logger.info("Namespaces gone since the last list: %s", ", ".join(sorted(vanished)))
        self.logger.info("Tracking %d namespaces", len(tracked))

    def _seed_domains(self, listing: Any) -> None:
        for item in _list_items(listing):
            name = object_name(item)
            if name:
                self._enqueue(self.mapper.key_for_domain(name))

    def _list_namespaces(self, **kwargs: Any) -> Any:
        return self.core_api.list_namespace(**kwargs)

    def _list_domains(self, **kwargs: Any) -> Any:
        return self.custom_api.list_cluster_custom_object(
            group=ATHENZ_GROUP,
            version=ATHENZ_VERSION,
            plural=ATHENZ_PLURAL,
            **kwargs,
        )

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            watchers = list(self._active_watchers.values())
        for active_watcher in watchers:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _mark_synced(self, resource: str) -> None:
        with self._watcher_lock:
            self._synced.add(resource)
            if self._synced >= {NAMESPACES, ATHENZ_DOMAINS}:
                self.ready.set()

    def _mark_denied(self, resource: str) -> None:
        """A resource whose loop gave up on RBAC can no longer keep the syncer ready."""
        with self._watcher_lock:
            self._synced.discard(resource)
            self.ready.clear()

    def _backoff_wait(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run_resource(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        seed: Callable[[Any], None],
        handle: Callable[[str, Any], ReconcileKey | None],
        stop: threading.Event,
        timeout_seconds: int = 300,
    ) -> None:
        """List-then-watch ``resource`` until stopped.

        1. Retries the initial list with jittered exponential backoff.
        2. Seeds keys from the listing and watches from its ``resourceVersion``.
        3. On ``410 Gone``, re-lists (re-seeding every key) and resumes.
        4. Transient errors back off with jitter, capped at 30 s.

        ``401`` / ``403`` responses are configuration errors (RBAC) and end
        the loop immediately.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = list_fn()
                resource_version = object_resource_version(initial)
                seed(initial)
                self._mark_synced(resource)
                self.logger.info("Watching %s from resourceVersion %s", resource, resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check syncer RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    self._mark_denied(resource)
                    return
                self.logger.exception("Initial list of %s failed", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            backoff_seconds = self._backoff_wait(stop, backoff_seconds)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[resource] = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource).inc()
                stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    latest = object_resource_version(obj)
                    if latest:
                        resource_version = latest
                    handle(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", resource)
                    try:
                        fresh = list_fn()
                        resource_version = object_resource_version(fresh)
                        seed(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s)",
                                resource,
                                relist_exc.status,
                            )
                            self._mark_denied(resource)
                            return
                        self.logger.exception("Failed to re-list %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check syncer RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    self._mark_denied(resource)
                    return

                self.logger.exception("Kubernetes API watch error on %s", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(resource) is watcher:
                        del self._active_watchers[resource]

    def run_namespaces(self, stop: threading.Event) -> None:
        self.run_resource(
            NAMESPACES,
            self._list_namespaces,
            self._seed_namespaces,
            self.handle_namespace_event,
            stop,
        )

    def run_domains(self, stop: threading.Event) -> None:
        self.run_resource(
            ATHENZ_DOMAINS,
            self._list_domains,
            self._seed_domains,
            self.handle_domain_event,
            stop,
        )

    def start(self, stop: threading.Event) -> list[threading.Thread]:
        self._external_stop.clear()
        self._threads = [
            threading.Thread(target=self.run_namespaces, args=(stop,), name="watch-namespaces", daemon=True),
            threading.Thread(target=self.run_domains, args=(stop,), name="watch-athenzdomains", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self._threads
