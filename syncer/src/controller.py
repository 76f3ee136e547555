from __future__ import annotations

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from syncer.src.config import SyncerConfig
from syncer.src.kube import (
    AthenzDomainStore,
    ConflictError,
    build_athenz_domain,
    namespace_exists,
    resource_version_of,
)
from syncer.src.metrics import METRICS
from syncer.src.naming import DomainMapper, ReconcileKey
from syncer.src.watch import WatchSource
from syncer.src.workqueue import DelayedWorkQueue, build_backoff
from syncer.src.zms import DomainNotFoundError, DomainSnapshot, ZMSError

# Kubernetes object names: lowercase RFC 1123 subdomain.
_OBJECT_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class SnapshotError(ValueError):
    """Raised when a snapshot cannot be mapped onto a valid ``AthenzDomain``."""


class SnapshotSource(Protocol):
    def get_domain_snapshot(self, domain: str) -> DomainSnapshot: ...

    def list_modified_domains(self, since: datetime) -> list[str]: ...


class DomainStore(Protocol):
    def get(self, name: str) -> dict[str, Any] | None: ...

    def create(self, body: dict[str, Any]) -> dict[str, Any]: ...

    def replace(self, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, name: str) -> bool: ...


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def normalize_spec(spec: Any) -> dict[str, Any] | None:
    """Bring a stored ``AthenzDomain`` spec into the shape of :meth:`DomainSnapshot.as_spec`.

    Member order and duplicates are irrelevant. Returns None when the stored
    spec is not recognisable, which always counts as a difference.
    """
    if not isinstance(spec, dict):
        return None
    roles = spec.get("roles")
    if not isinstance(roles, dict):
        return None
    normalized: dict[str, list[str]] = {}
    for name in sorted(roles):
        members = roles[name]
        if not isinstance(members, list):
            return None
        normalized[name] = sorted({str(member) for member in members})
    return {"domain": spec.get("domain"), "roles": normalized}


def validate_snapshot(snapshot: DomainSnapshot) -> None:
    if not _OBJECT_NAME.match(snapshot.domain) or len(snapshot.domain) > 253:
        raise SnapshotError(f"domain {snapshot.domain!r} is not a valid object name")
    for role, members in snapshot.roles.items():
        if not role:
            raise SnapshotError(f"domain {snapshot.domain} has a role without a name")
        if any(not member for member in members):
            raise SnapshotError(f"role {role} of domain {snapshot.domain} has an empty member")


class Reconciler:
    """Drains the work queue and mirrors ZMS domains into ``AthenzDomain`` objects.

    Per key the flow is: check the namespace still exists, fetch the
    snapshot from ZMS, read the stored object, then create, replace, delete
    or leave it alone. Any number of workers may run :meth:`run_worker`
    concurrently; the queue hands a key to one worker at a time, so no
    per-key locking is needed here.

    Failure handling:
        * Retryable ZMS errors and unresolved update conflicts re-queue the
          key with backoff until ``max_attempts`` is reached, after which the
          key is dropped until the next resync adds it again.
        * Malformed snapshots and unexpected errors are logged and dropped
          straight away.
        * A ``409`` on replace re-reads the stored object and retries the
          write up to ``conflict_retries`` times within the same attempt.
    """

    def __init__(
        self,
        queue: DelayedWorkQueue,
        zms: SnapshotSource,
        store: DomainStore,
        namespace_exists: Callable[[str], bool],
        max_attempts: int = 3,
        conflict_retries: int = 3,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.queue = queue
        self.zms = zms
        self.store = store
        self.namespace_exists = namespace_exists
        self.max_attempts = max_attempts
        self.conflict_retries = conflict_retries
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _delete(self, key: ReconcileKey, reason: str) -> SyncAction:
        if not self.store.delete(key.domain):
            return SyncAction.UNCHANGED
        METRICS.writes_total.labels(action=SyncAction.DELETED.value).inc()
        self.logger.info("Deleted AthenzDomain %s (%s)", key.domain, reason)
        return SyncAction.DELETED

    def _create(self, key: ReconcileKey, desired: dict[str, Any]) -> bool:
        body = build_athenz_domain(key.domain, desired, key.namespace, self.now_fn())
        try:
            self.store.create(body)
        except ApiException as exc:
            if exc.status == 409:
                return False
            raise
        METRICS.writes_total.labels(action=SyncAction.CREATED.value).inc()
        self.logger.info("Created AthenzDomain %s with %d roles", key.domain, len(desired["roles"]))
        return True

    def _replace(self, key: ReconcileKey, desired: dict[str, Any], current: dict[str, Any]) -> bool:
        body = build_athenz_domain(
            key.domain,
            desired,
            key.namespace,
            self.now_fn(),
            resource_version=resource_version_of(current),
        )
        try:
            self.store.replace(key.domain, body)
        except ConflictError:
            METRICS.conflicts_total.inc()
            return False
        METRICS.writes_total.labels(action=SyncAction.UPDATED.value).inc()
        self.logger.info("Updated AthenzDomain %s with %d roles", key.domain, len(desired["roles"]))
        return True

    def apply(self, key: ReconcileKey, snapshot: DomainSnapshot) -> SyncAction:
        """Write the minimal change that makes the stored object match ``snapshot``."""
        validate_snapshot(snapshot)
        desired = snapshot.as_spec()
        for attempt in range(self.conflict_retries + 1):
            current = self.store.get(key.domain)
            if current is None:
                if snapshot.is_empty:
                    return SyncAction.UNCHANGED
                if self._create(key, desired):
                    return SyncAction.CREATED
            elif normalize_spec(current.get("spec")) == desired:
                return SyncAction.UNCHANGED
            elif self._replace(key, desired, current):
                return SyncAction.UPDATED
            self.logger.info(
                "AthenzDomain %s changed underneath us (attempt %d), re-reading",
                key.domain,
                attempt + 1,
            )
        raise ConflictError(
            f"AthenzDomain {key.domain} still conflicting after {self.conflict_retries} retries"
        )

    def reconcile(self, key: ReconcileKey) -> SyncAction:
        """Bring the ``AthenzDomain`` for ``key`` in line with ZMS."""
        if key.namespace is not None and not self.namespace_exists(key.namespace):
            return self._delete(key, reason=f"namespace {key.namespace} no longer exists")
        try:
            snapshot = self.zms.get_domain_snapshot(key.domain)
        except DomainNotFoundError:
            return self._delete(key, reason="domain no longer exists in ZMS")
        return self.apply(key, snapshot)

    def _retry_or_drop(self, key: ReconcileKey, exc: Exception) -> str:
        attempts = self.queue.num_requeues(key) + 1
        if attempts < self.max_attempts:
            delay = self.queue.add_rate_limited(key)
            METRICS.retry_total.inc()
            self.logger.warning(
                "Reconcile of %s failed (attempt %d/%d); retrying in %.2fs: %s",
                key,
                attempts,
                self.max_attempts,
                delay,
                exc,
            )
            return "retry"

        self.queue.forget(key)
        METRICS.dropped_total.labels(reason="retries_exhausted").inc()
        self.logger.error(
            "Dropping %s after %d failed attempts; it will be retried on the next resync: %s",
            key,
            attempts,
            exc,
        )
        return "dropped"

    def _drop(self, key: ReconcileKey, reason: str) -> str:
        self.queue.forget(key)
        METRICS.dropped_total.labels(reason=reason).inc()
        return "dropped"

    def handle(self, key: ReconcileKey) -> str:
        """Reconcile one dequeued key and settle its retry state. Returns the outcome label."""
        try:
            action = self.reconcile(key)
        except ZMSError as exc:
            if exc.retryable:
                return self._retry_or_drop(key, exc)
            self.logger.error(
                "Dropping %s: ZMS returned unusable data (status=%s): %s body=%s",
                key,
                exc.status_code,
                exc,
                exc.body_preview(),
            )
            return self._drop(key, reason="malformed")
        except ConflictError as exc:
            return self._retry_or_drop(key, exc)
        except SnapshotError as exc:
            self.logger.error("Dropping %s: %s", key, exc)
            return self._drop(key, reason="malformed")
        except Exception:
            self.logger.exception("Unexpected error reconciling %s; dropping key", key)
            return self._drop(key, reason="error")

        self.queue.forget(key)
        if action is not SyncAction.UNCHANGED:
            self.logger.debug("Reconciled %s: %s", key, action.value)
        return action.value

    def process_next(self) -> bool:
        """Process one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        started = time.monotonic()
        try:
            result = self.handle(key)  # type: ignore[arg-type]
            METRICS.reconcile_total.labels(result=result).inc()
        finally:
            self.queue.done(key)
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        return True

    def run_worker(self) -> None:
        while self.process_next():
            pass


class _Ticker(ABC):
    """Calls :meth:`tick` every ``interval`` seconds until the stop event is set."""

    name = "ticker"
    interval: float
    logger: logging.Logger

    @abstractmethod
    def tick(self) -> int:
        """Run one round and return how many keys were enqueued."""

    def run(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.interval):
            try:
                self.tick()
            except Exception:
                self.logger.exception("%s tick failed", self.name)


class ResyncTicker(_Ticker):
    """Re-enqueues every tracked namespace (and the admin domain) on a fixed period.

    Bounds staleness when watch events are lost or coalesced. The queue's
    dedup keeps a congested backlog from growing.
    """

    name = "resync"

    def __init__(
        self,
        queue: DelayedWorkQueue,
        tracked_namespaces: Callable[[], Iterable[str]],
        mapper: DomainMapper,
        interval: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.tracked_namespaces = tracked_namespaces
        self.mapper = mapper
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)

    def tick(self) -> int:
        keys = [self.mapper.key_for_namespace(name) for name in self.tracked_namespaces()]
        keys.append(self.mapper.admin_key())
        count = 0
        for key in keys:
            if key is None:
                continue
            self.queue.add(key)
            count += 1
        METRICS.resyncs_total.inc()
        self.logger.info("Full resync enqueued %d keys", count)
        return count


class UpdateTicker(_Ticker):
    """Polls ZMS for recently modified domains and enqueues the tracked ones.

    The poll window starts where the previous successful poll started, so a
    failed poll is covered by the next one.
    """

    name = "update"

    def __init__(
        self,
        queue: DelayedWorkQueue,
        zms: SnapshotSource,
        tracked_namespaces: Callable[[], Iterable[str]],
        mapper: DomainMapper,
        interval: float,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.queue = queue
        self.zms = zms
        self.tracked_namespaces = tracked_namespaces
        self.mapper = mapper
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.last_checked = clock()

    def tick(self) -> int:
        started = self.clock()
        try:
            names = self.zms.list_modified_domains(self.last_checked)
        except ZMSError as exc:
            METRICS.update_polls_total.labels(result="failed").inc()
            self.logger.warning("Polling ZMS for modified domains failed: %s", exc)
            return 0

        tracked = set(self.tracked_namespaces())
        count = 0
        for name in names:
            key = self.mapper.key_for_domain(name)
            if key is None or (key.namespace is not None and key.namespace not in tracked):
                continue
            self.queue.add(key)
            count += 1
        self.last_checked = started
        METRICS.update_polls_total.labels(result="success").inc()
        if count:
            self.logger.info("Enqueued %d domains modified in ZMS", count)
        return count


class SyncController:
    """Wires the watch source, tickers and reconciler workers together.

    :meth:`run_forever` starts every loop on its own thread and blocks until
    the shutdown event is set. Shutdown stops the watches, shuts the queue
    down so idle workers return, and waits for in-flight reconciles to
    finish.
    """

    def __init__(
        self,
        queue: DelayedWorkQueue,
        watch_source: WatchSource,
        reconciler: Reconciler,
        resync: ResyncTicker,
        update: UpdateTicker,
        worker_count: int = 2,
        join_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.watch_source = watch_source
        self.reconciler = reconciler
        self.resync = resync
        self.update = update
        self.worker_count = worker_count
        self.join_timeout = join_timeout
        self.logger = logger or logging.getLogger(__name__)

    @property
    def ready(self) -> threading.Event:
        return self.watch_source.ready

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()

        admin_key = self.resync.mapper.admin_key()
        if admin_key is not None:
            self.queue.add(admin_key)

        self.watch_source.start(stop)
        tickers = [
            threading.Thread(target=self.resync.run, args=(stop,), name="resync-ticker", daemon=True),
            threading.Thread(target=self.update.run, args=(stop,), name="update-ticker", daemon=True),
        ]
        workers = [
            threading.Thread(target=self.reconciler.run_worker, name=f"reconciler-{index}", daemon=True)
            for index in range(self.worker_count)
        ]
        for thread in tickers + workers:
            thread.start()
        self.logger.info("Started %d reconciler workers", self.worker_count)

        while not stop.wait(timeout=1.0):
            pass

        self.logger.info("Shutting down; waiting for in-flight reconciles")
        stop.set()
        self.watch_source.request_stop()
        self.queue.shut_down()
        deadline = time.monotonic() + self.join_timeout
        for thread in workers + tickers:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.error("Thread %s did not stop within %ss", thread.name, self.join_timeout)
        self.watch_source.ready.clear()


def build_controller(
    config: SyncerConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    zms: SnapshotSource,
) -> SyncController:
    """Construct a :class:`SyncController` from the loaded configuration."""
    mapper = DomainMapper(admin_domain=config.admin_domain, system_namespaces=config.system_namespaces)
    queue = DelayedWorkQueue(
        backoff=build_backoff(config.queue_backoff, config.queue_delay_interval, config.queue_max_delay)
    )
    watch_source = WatchSource(core_api=core_api, custom_api=custom_api, queue=queue, mapper=mapper)
    reconciler = Reconciler(
        queue=queue,
        zms=zms,
        store=AthenzDomainStore(custom_api),
        namespace_exists=lambda name: namespace_exists(core_api, name),
        max_attempts=config.max_retry_attempts,
        conflict_retries=config.conflict_retries,
    )
    resync = ResyncTicker(
        queue=queue,
        tracked_namespaces=watch_source.tracked_namespaces,
        mapper=mapper,
        interval=config.resync_interval,
    )
    update = UpdateTicker(
        queue=queue,
        zms=zms,
        tracked_namespaces=watch_source.tracked_namespaces,
        mapper=mapper,
        interval=config.update_interval,
    )
    return SyncController(
        queue=queue,
        watch_source=watch_source,
        reconciler=reconciler,
        resync=resync,
        update=update,
        worker_count=config.worker_count,
    )
