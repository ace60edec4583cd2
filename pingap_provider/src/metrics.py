from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ProviderMetrics:
    """Prometheus metrics exported by the provider on ``/metrics``.

    Publish counters carry ``action`` (upsert/delete) and ``outcome`` labels so
    operators can alert on rejected or failed control-plane calls separately
    from transient noise.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_events_total",
            "Total container lifecycle events received from the runtime",
            ["action"],
        )
    )
    invalid_containers_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_invalid_containers_total",
            "Total enabled containers skipped because no route could be built",
            ["reason"],
        )
    )
    stream_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_stream_errors_total",
            "Total runtime event stream errors",
        )
    )
    stream_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_stream_reconnects_total",
            "Total event stream reconnects after the initial subscription",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_resyncs_total",
            "Total full container listings",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "pingap_provider_queue_depth",
            "Commands waiting for the reconcile engine",
        )
    )
    queue_rejections_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_queue_rejections_total",
            "Total container commands rejected by a saturated queue",
        )
    )
    tracked_containers: Gauge = field(
        default_factory=lambda: Gauge(
            "pingap_provider_tracked_containers",
            "Containers currently tracked by the state store",
        )
    )
    reconcile_passes_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_reconcile_passes_total",
            "Total reconciliation passes",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "pingap_provider_reconcile_duration_seconds",
            "Seconds spent computing and dispatching one reconciliation pass",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, float("inf")),
        )
    )
    publishes_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_publishes_total",
            "Total completed publishes by outcome",
            ["action", "outcome"],
        )
    )
    publish_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "pingap_provider_publish_retries_total",
            "Total publish retries after transient control-plane errors",
            ["action"],
        )
    )
    publish_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "pingap_provider_publish_latency_seconds",
            "Seconds from dispatch to completion of one publish, retries included",
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    publishes_in_flight: Gauge = field(
        default_factory=lambda: Gauge(
            "pingap_provider_publishes_in_flight",
            "Publishes dispatched and not yet completed",
        )
    )
    published_services: Gauge = field(
        default_factory=lambda: Gauge(
            "pingap_provider_published_services",
            "Services confirmed as published on the control plane",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "pingap_provider",
            "Build information for the provider",
        )
    )


METRICS = ProviderMetrics()
