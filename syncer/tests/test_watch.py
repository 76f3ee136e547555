from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException

from syncer.src.naming import DomainMapper, ReconcileKey
from syncer.src.watch import (
    ATHENZ_DOMAINS,
    NAMESPACES,
    WatchSource,
    object_name,
    object_resource_version,
)


class RecordingQueue:
    def __init__(self) -> None:
        self.keys: list[ReconcileKey] = []

    def add(self, key: ReconcileKey) -> None:
        self.keys.append(key)


def make_namespace(name: str, resource_version: str = "1") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, resource_version=resource_version))


def make_domain(name: str, resource_version: str = "1") -> dict[str, Any]:
    return {"metadata": {"name": name, "resourceVersion": resource_version}, "spec": {"domain": name}}


def _fake_core_api(
    resource_versions: list[str] | None = None,
    item_sets: list[list[SimpleNamespace]] | None = None,
) -> SimpleNamespace:
    versions = resource_versions or ["100"]
    items_by_call = item_sets or [[]]
    call_count = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal call_count
        index = min(call_count, len(versions) - 1)
        items_index = min(call_count, len(items_by_call) - 1)
        call_count += 1
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=versions[index]),
            items=items_by_call[items_index],
        )

    return SimpleNamespace(list_namespace=fake_list)


def _make_source(
    core_api: Any = None,
    custom_api: Any = None,
    mapper: DomainMapper | None = None,
) -> tuple[WatchSource, RecordingQueue]:
    queue = RecordingQueue()
    source = WatchSource(
        core_api=core_api or _fake_core_api(),
        custom_api=custom_api or MagicMock(),
        queue=queue,
        mapper=mapper or DomainMapper(admin_domain="k8s.admin", system_namespaces=["kube-system"]),
    )
    return source, queue


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


def test_object_accessors_read_models_and_dicts() -> None:
    assert object_name(make_namespace("search")) == "search"
    assert object_name(make_domain("search")) == "search"
    assert object_resource_version(make_namespace("search", "7")) == "7"
    assert object_resource_version({"metadata": {"resourceVersion": "9"}}) == "9"
    assert object_name({}) is None


def test_namespace_added_enqueues_and_tracks() -> None:
    source, queue = _make_source()

    key = source.handle_namespace_event("ADDED", make_namespace("sports-search"))

    assert key == ReconcileKey("sports-search", "sports.search")
    assert queue.keys == [key]
    assert source.tracked_namespaces() == ["sports-search"]


def test_namespace_deleted_enqueues_and_stops_tracking() -> None:
    source, queue = _make_source()
    source.handle_namespace_event("ADDED", make_namespace("search"))

    source.handle_namespace_event("DELETED", make_namespace("search"))

    assert queue.keys == [ReconcileKey("search", "search")] * 2
    assert source.tracked_namespaces() == []


def test_system_namespace_and_unknown_events_are_ignored() -> None:
    source, queue = _make_source()

    assert source.handle_namespace_event("ADDED", make_namespace("kube-system")) is None
    assert source.handle_namespace_event("BOOKMARK", make_namespace("search")) is None
    assert source.handle_namespace_event("ADDED", SimpleNamespace(metadata=None)) is None

    assert queue.keys == []
    assert source.tracked_namespaces() == []


def test_domain_event_maps_object_name_to_key() -> None:
    source, queue = _make_source()

    source.handle_domain_event("MODIFIED", make_domain("sports.search"))
    source.handle_domain_event("DELETED", make_domain("k8s.admin"))

    assert queue.keys == [
        ReconcileKey("sports-search", "sports.search"),
        ReconcileKey(None, "k8s.admin"),
    ]


def test_seed_namespaces_replaces_tracked_set() -> None:
    source, queue = _make_source()
    source.handle_namespace_event("ADDED", make_namespace("stale"))
    queue.keys.clear()

    source._seed_namespaces(
        SimpleNamespace(items=[make_namespace("search"), make_namespace("kube-system"), make_namespace("media")])
    )

    assert source.tracked_namespaces() == ["media", "search"]
    assert queue.keys == [
        ReconcileKey("media", "media"),
        ReconcileKey("search", "search"),
        ReconcileKey("stale", "stale"),
    ]


def test_relist_enqueues_namespaces_deleted_while_watch_was_down() -> None:
    core_api = _fake_core_api(
        resource_versions=["100", "200"],
        item_sets=[[make_namespace("search"), make_namespace("gone")], [make_namespace("search")]],
    )
    source, queue = _make_source(core_api=core_api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    streams = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal streams
        streams += 1
        if streams == 1:
            queue.keys.clear()
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("syncer.src.watch.watch.Watch", return_value=mock_watcher):
        source.run_namespaces(stop)

    assert source.tracked_namespaces() == ["search"]
    assert queue.keys == [ReconcileKey("gone", "gone"), ReconcileKey("search", "search")]


def test_ready_requires_both_resources_synced() -> None:
    source, _ = _make_source()

    source._mark_synced(NAMESPACES)
    assert not source.ready.is_set()
    source._mark_synced(ATHENZ_DOMAINS)
    assert source.ready.is_set()


# ---------------------------------------------------------------------------
# List-then-watch loop
# ---------------------------------------------------------------------------


def test_run_namespaces_seeds_then_processes_events() -> None:
    core_api = _fake_core_api(resource_versions=["100"], item_sets=[[make_namespace("search")]])
    source, queue = _make_source(core_api=core_api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    versions_seen: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs.get("resource_version"))
        if len(versions_seen) == 1:
            return iter([{"type": "ADDED", "object": make_namespace("media", "101")}])
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("syncer.src.watch.watch.Watch", return_value=mock_watcher):
        source.run_namespaces(stop)

    assert queue.keys == [ReconcileKey("search", "search"), ReconcileKey("media", "media")]
    assert source.tracked_namespaces() == ["media", "search"]
    assert versions_seen == ["100", "101"]
    assert mock_watcher.stop.call_count >= 1


def test_run_domains_lists_cluster_custom_objects() -> None:
    custom_api = MagicMock()
    custom_api.list_cluster_custom_object.return_value = {
        "metadata": {"resourceVersion": "55"},
        "items": [make_domain("search")],
    }
    source, queue = _make_source(custom_api=custom_api)
    stop = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        assert kwargs["resource_version"] == "55"
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("syncer.src.watch.watch.Watch", return_value=mock_watcher):
        source.run_domains(stop)

    custom_api.list_cluster_custom_object.assert_called_with(
        group="athenz.io", version="v1", plural="athenzdomains"
    )
    assert queue.keys == [ReconcileKey("search", "search")]


def test_expired_watch_relists_and_resumes_from_new_version() -> None:
    core_api = _fake_core_api(
        resource_versions=["100", "200"],
        item_sets=[[make_namespace("search")], [make_namespace("search"), make_namespace("media")]],
    )
    source, queue = _make_source(core_api=core_api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    versions_seen: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs.get("resource_version"))
        if len(versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("syncer.src.watch.watch.Watch", return_value=mock_watcher):
        source.run_namespaces(stop)

    assert versions_seen == ["100", "200"]
    assert source.tracked_namespaces() == ["media", "search"]
    assert ReconcileKey("media", "media") in queue.keys


def test_initial_list_retries_with_backoff_on_transient_error() -> None:
    attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])

    source, _ = _make_source(core_api=SimpleNamespace(list_namespace=fake_list))
    stop = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("syncer.src.watch.watch.Watch", return_value=mock_watcher),
        patch("syncer.src.watch.threading.Event.wait", side_effect=fake_wait),
        patch("syncer.src.watch.random.random", return_value=0.5),
    ):
        source.run_namespaces(stop)

    assert attempts == 2
    assert wait_values == [1.0]
    assert mock_watcher.stream.call_count == 1


def test_startup_rbac_denied_exits_without_watching() -> None:
    def fake_list(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=403, reason="forbidden")

    source, _ = _make_source(core_api=SimpleNamespace(list_namespace=fake_list))
    watch_factory = MagicMock()

    with patch("syncer.src.watch.watch.Watch", watch_factory):
        source.run_namespaces(threading.Event())

    watch_factory.assert_not_called()
    assert not source.ready.is_set()


def test_watch_rbac_denied_exits_without_backoff() -> None:
    source, _ = _make_source()
    source._mark_synced(ATHENZ_DOMAINS)
    mock_watcher = MagicMock()
    wait_values: list[float] = []
    ready_when_watching: list[bool] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        ready_when_watching.append(source.ready.is_set())
        raise ApiException(status=401, reason="unauthorized")

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("syncer.src.watch.watch.Watch", return_value=mock_watcher),
        patch("syncer.src.watch.threading.Event.wait", side_effect=fake_wait),
    ):
        source.run_namespaces(threading.Event())

    assert wait_values == []
    assert mock_watcher.stream.call_count == 1
    assert ready_when_watching == [True]
    assert not source.ready.is_set()


def test_watch_errors_back_off_exponentially() -> None:
    source, _ = _make_source()
    stop = threading.Event()
    calls = 0
    wait_values: list[float] = []
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("syncer.src.watch.watch.Watch", return_value=mock_watcher),
        patch("syncer.src.watch.threading.Event.wait", side_effect=fake_wait),
        patch("syncer.src.watch.random.random", return_value=0.5),
    ):
        source.run_namespaces(stop)

    assert wait_values == [1.0, 2.0, 4.0]


def test_request_stop_interrupts_open_stream() -> None:
    source, queue = _make_source()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        source.request_stop()
        return iter([{"type": "ADDED", "object": make_namespace("search")}])

    mock_watcher.stream.side_effect = patched_stream

    with patch("syncer.src.watch.watch.Watch", return_value=mock_watcher):
        source.run_namespaces(threading.Event())

    assert mock_watcher.stop.call_count >= 2
    assert queue.keys == []
