from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class AresMetrics:
    """Prometheus metrics exported by ARES on ``/metrics``.

    Reconcile and mutation counters carry low-cardinality labels only; the
    record fqdn goes to the logs, not to metric labels.
    """

    reconcile_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_reconcile_attempts_total",
            "Total reconcile attempts by outcome",
            ["outcome"],
        )
    )
    reconcile_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_reconcile_retries_total",
            "Total reconcile attempts restarted after a failure",
        )
    )
    record_mutations_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_record_mutations_total",
            "Total owned DNS record mutations",
            ["operation"],
        )
    )
    ownership_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_ownership_conflicts_total",
            "Total mutations refused because of tracking-record state",
            ["operation"],
        )
    )
    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_watch_events_total",
            "Total watch events received",
            ["stream", "type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ares_watch_errors_total",
            "Total watch stream errors and unexpected closes",
            ["stream"],
        )
    )
    active_tasks: Gauge = field(
        default_factory=lambda: Gauge(
            "ares_active_tasks",
            "Number of reconcile tasks currently running",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ares",
            "Build information for ARES",
        )
    )


METRICS = AresMetrics()
