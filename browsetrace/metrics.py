"""
Prometheus metrics for the BrowseTrace agent.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os


class Metrics:
    """
    Centralized metrics for the agent.
    """

    def __init__(self, service_name: str = "browsetrace", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=service_name).set(0)

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Ingestion
        self.events_stored_total = Counter(
            "browsetrace_events_stored_total",
            "Total events persisted",
            ["event_type"],
            registry=self.registry,
        )

        self.batches_total = Counter(
            "browsetrace_batches_total",
            "Event batches received, by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.batch_size = Histogram(
            "browsetrace_batch_size_events",
            "Number of events per submitted batch",
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
            registry=self.registry,
        )

        # Process
        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )

        self.process_open_fds = Gauge(
            "process_open_fds",
            "Number of open file descriptors",
            ["service"],
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Update process metrics from psutil."""
        try:
            process = psutil.Process(os.getpid())
            self.process_memory_bytes.labels(service=self.service_name).set(process.memory_info().rss)
            try:
                self.process_open_fds.labels(service=self.service_name).set(process.num_fds())
            except AttributeError:
                # num_fds() is not available on Windows
                pass
        except psutil.Error:
            pass

    def record_batch(self, outcome: str, event_types: list[str] | None = None):
        """Record one submitted batch and, when stored, its events by type."""
        self.batches_total.labels(outcome=outcome).inc()
        if event_types is None:
            return
        self.batch_size.observe(len(event_types))
        if outcome == "stored":
            for event_type in event_types:
                self.events_stored_total.labels(event_type=event_type).inc()

    def mark_down(self):
        self.app_up.labels(service=self.service_name, version=self.version).set(0)
