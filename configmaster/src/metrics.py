from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Bundle counters carry a ``kind`` label (``ConfigMap``/``Secret``) and
    debounce counters a ``stage`` label (``change``/``update``).
    """

    change_events_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_change_events_total",
            "Total MODIFIED events received from the bundle watches",
            ["kind"],
        )
    )
    settled_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_settled_changes_total",
            "Total bundle changes whose debounce window elapsed",
            ["kind"],
        )
    )
    debounce_resets_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_debounce_resets_total",
            "Total notifications that reset an already running countdown",
            ["stage"],
        )
    )
    pending_timers: Gauge = field(
        default_factory=lambda: Gauge(
            "configmaster_pending_timers",
            "Current number of live countdowns",
            ["stage"],
        )
    )
    dropped_timers_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_dropped_timers_total",
            "Total countdowns dropped on shutdown",
            ["stage"],
        )
    )
    deployments_queued_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_deployments_queued_total",
            "Total deployments found to depend on a settled change",
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_patches_total",
            "Total deployment patches submitted",
        )
    )
    patch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_patch_errors_total",
            "Total deployment updates abandoned because of an error",
        )
    )
    list_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_list_errors_total",
            "Total dependency scans abandoned because deployments could not be listed",
        )
    )
    watch_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "configmaster_watch_failures_total",
            "Total bundle watches that failed or ended",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configmaster",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
