from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class SyncerMetrics:
    """Prometheus metrics exported by the syncer on ``/metrics``."""

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_reconcile_total",
            "Total reconcile attempts by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "athenz_syncer_reconcile_duration_seconds",
            "Seconds spent reconciling a single key",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    writes_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_writes_total",
            "Total AthenzDomain writes issued by the reconciler",
            ["action"],
        )
    )
    conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_conflicts_total",
            "Total resourceVersion conflicts on AthenzDomain updates",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_retry_total",
            "Total keys re-queued with backoff after a retryable failure",
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_dropped_total",
            "Total keys dropped after exhausting retries or on permanent errors",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "athenz_syncer_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_resyncs_total",
            "Total full resync passes",
        )
    )
    update_polls_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_update_polls_total",
            "Total ZMS modified-domain polls by outcome",
            ["result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    zms_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_zms_errors_total",
            "Total failed ZMS calls by error kind",
            ["kind"],
        )
    )
    cert_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "athenz_syncer_cert_reloads_total",
            "Total credential reload attempts by outcome",
            ["result"],
        )
    )
    cert_expiry_timestamp_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "athenz_syncer_cert_expiry_timestamp_seconds",
            "Expiry of the active client certificate as a unix timestamp",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "athenz_syncer",
            "Build information for the syncer",
        )
    )


METRICS = SyncerMetrics()
