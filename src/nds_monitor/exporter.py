from __future__ import annotations

from prometheus_client import CollectorRegistry, Gauge

from nds_monitor.service import ProbeResult
from nds_monitor.storage import MetricQueue, PersistenceWorker, WorkerState


class NdsMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.probe_success = Gauge(
            "nds_probe_success",
            "Latest probe status (1=success, 0=failure)",
            ["portal"],
            registry=self.registry,
        )
        self.probe_duration_seconds = Gauge(
            "nds_probe_duration_seconds",
            "Duration of the last ndsctl probe cycle in seconds",
            ["portal"],
            registry=self.registry,
        )
        self.probe_timestamp_seconds = Gauge(
            "nds_probe_timestamp_seconds",
            "Unix timestamp of the last successful probe",
            ["portal"],
            registry=self.registry,
        )
        self.service_error = Gauge(
            "nds_service_error",
            "1 when nodogsplash was detected as not running on the last probe",
            ["portal"],
            registry=self.registry,
        )
        self.clients_authenticated = Gauge(
            "nds_clients_authenticated",
            "Authenticated clients reported by the last probe",
            ["portal"],
            registry=self.registry,
        )
        self.clients_preauth = Gauge(
            "nds_clients_preauth",
            "Pre-auth clients reported by the last probe",
            ["portal"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "nds_metric_queue_depth",
            "Metric batches waiting for the store worker",
            registry=self.registry,
        )
        self.queue_dropped = Gauge(
            "nds_metric_queue_dropped_total",
            "Metric batches dropped because the queue was full or closed",
            registry=self.registry,
        )
        self.store_error_count = Gauge(
            "nds_store_error_count",
            "Consecutive store failures confirmed by a failed ping",
            registry=self.registry,
        )
        self.store_reconnecting = Gauge(
            "nds_store_reconnecting",
            "1 while the store worker is backing off before a reconnect",
            registry=self.registry,
        )
        self.store_batches_written = Gauge(
            "nds_store_batches_written_total",
            "Metric batches written to the store",
            registry=self.registry,
        )
        self.store_batches_failed = Gauge(
            "nds_store_batches_failed_total",
            "Metric batches dropped after a failed store write",
            registry=self.registry,
        )

    def apply_probe_result(self, *, portal: str, result: ProbeResult) -> None:
        self.probe_success.labels(portal=portal).set(1.0 if result.success else 0.0)
        if result.probe_duration_seconds is not None:
            self.probe_duration_seconds.labels(portal=portal).set(result.probe_duration_seconds)
        if not result.success:
            return
        if result.observed_at is not None:
            self.probe_timestamp_seconds.labels(portal=portal).set(float(result.observed_at))
        self.service_error.labels(portal=portal).set(1.0 if result.service_down else 0.0)
        if not result.service_down:
            self.clients_authenticated.labels(portal=portal).set(float(result.authenticated))
            self.clients_preauth.labels(portal=portal).set(float(result.preauth))

    def observe_pipeline(self, *, metric_queue: MetricQueue, worker: PersistenceWorker) -> None:
        self.queue_depth.set(float(metric_queue.depth))
        self.queue_dropped.set(float(metric_queue.dropped))
        status = worker.status
        self.store_error_count.set(float(status.error_count))
        self.store_reconnecting.set(1.0 if status.state is WorkerState.RECONNECTING else 0.0)
        counters = worker.counters
        self.store_batches_written.set(float(counters.written))
        self.store_batches_failed.set(float(counters.failed))
