"""
Prometheus metrics collection for Cert Alarm.
"""

import re
import socket
import sys
import time
from typing import Any, Dict

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from cert_alarm.logger import get_logger, log_metrics_collection
from cert_alarm.models import CertificateRecord, SweepResult

# Rendered as integers in the exposition output
_INTEGER_METRICS = (
    "cert_days_until_expiry",
    "cert_expiry_timestamp",
    "cert_last_sweep_timestamp",
    "cert_sweep_domains",
    "app_memory_bytes",
    "app_thread_count",
)


class MetricsCollector:
    """Prometheus metrics collector for certificate sweeps and application metrics."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Certificate metrics
        self.cert_days_until_expiry = Gauge(
            "cert_days_until_expiry",
            "Whole days until the certificate expires (0 once expired)",
            ["domain"],
            registry=self.registry,
        )

        self.cert_expiry_timestamp = Gauge(
            "cert_expiry_timestamp",
            "Certificate expiration time (Unix timestamp)",
            ["domain", "issuer"],
            registry=self.registry,
        )

        self.cert_check_success = Gauge(
            "cert_check_success",
            "Whether the last check of the domain produced a certificate (1) or failed (0)",
            ["domain", "method"],
            registry=self.registry,
        )

        # Sweep metrics
        self.cert_sweep_duration_seconds = Histogram(
            "cert_sweep_duration_seconds",
            "Duration of a full domain sweep",
            buckets=(1, 5, 15, 30, 60, 120, 300, 600),
            registry=self.registry,
        )

        self.cert_sweep_domains = Gauge(
            "cert_sweep_domains",
            "Domains in the last sweep by state",
            ["state"],
            registry=self.registry,
        )

        self.cert_last_sweep_timestamp = Gauge(
            "cert_last_sweep_timestamp",
            "Time the last sweep completed",
            registry=self.registry,
        )

        self.cert_dispatch_total = Counter(
            "cert_dispatch_total",
            "Dispatch gate outcomes",
            ["kind", "outcome"],
            registry=self.registry,
        )

        # Application metrics
        self.app_memory_bytes = Gauge(
            "app_memory_bytes",
            "Application memory usage in bytes",
            ["type"],  # rss, vms
            registry=self.registry,
        )

        self.app_cpu_percent = Gauge(
            "app_cpu_percent", "Application CPU usage percentage", registry=self.registry
        )

        self.app_thread_count = Gauge(
            "app_thread_count", "Number of application threads", registry=self.registry
        )

        self.app_info = Info(
            "app_info",
            "Application information",
            ["hostname", "version", "python_version"],
            registry=self.registry,
        )

        self._last_system_update = 0.0
        self._system_update_interval = 30  # Update system metrics every 30 seconds

        self.logger.info("Metrics collector initialized")

    def update_certificate_metrics(self, record: CertificateRecord) -> None:
        """
        Update per-domain metrics from one record.

        Args:
            record: Canonical certificate record
        """
        try:
            method = record.method.value if record.method else "none"
            self.cert_check_success.labels(domain=record.domain, method=method).set(
                1 if record.is_success else 0
            )

            if record.is_success and record.valid_to is not None:
                self.cert_days_until_expiry.labels(domain=record.domain).set(
                    record.days_until_expiry or 0
                )
                self.cert_expiry_timestamp.labels(
                    domain=record.domain, issuer=record.issuer or "unknown"
                ).set(int(record.valid_to.timestamp()))

        except Exception as e:
            self.logger.error(f"Failed to update certificate metrics: {e}")

    def update_sweep_metrics(self, sweep: SweepResult) -> None:
        """
        Replace per-domain metrics with the contents of a completed sweep.

        Args:
            sweep: Completed sweep
        """
        try:
            # Domains removed from configuration must not linger
            self.cert_days_until_expiry.clear()
            self.cert_expiry_timestamp.clear()
            self.cert_check_success.clear()

            for record in sweep.records:
                self.update_certificate_metrics(record)

            self.cert_sweep_duration_seconds.observe(sweep.duration)
            self.cert_sweep_domains.labels(state="healthy").set(sweep.healthy)
            self.cert_sweep_domains.labels(state="expiring").set(sweep.expiring)
            self.cert_sweep_domains.labels(state="failed").set(sweep.failed)
            self.cert_last_sweep_timestamp.set(int(time.time()))

            log_metrics_collection(
                self.logger,
                "sweep_completed",
                sweep.duration,
                {
                    "source": sweep.source,
                    "total": sweep.total,
                    "expiring": sweep.expiring,
                    "failed": sweep.failed,
                },
            )

        except Exception as e:
            self.logger.error(f"Failed to update sweep metrics: {e}")

    def record_dispatch(self, kind: str, outcome: str) -> None:
        self.cert_dispatch_total.labels(kind=kind, outcome=outcome).inc()

    def update_system_metrics(self) -> None:
        """Update system and application metrics."""
        current_time = time.time()

        # Only update system metrics every N seconds to reduce overhead
        if current_time - self._last_system_update < self._system_update_interval:
            return

        try:
            process = psutil.Process()

            memory_info = process.memory_info()
            self.app_memory_bytes.labels(type="rss").set(int(memory_info.rss))
            self.app_memory_bytes.labels(type="vms").set(int(memory_info.vms))

            cpu_percent = process.cpu_percent()
            self.app_cpu_percent.set(cpu_percent)

            thread_count = process.num_threads()
            self.app_thread_count.set(int(thread_count))

            from cert_alarm import __version__

            self.app_info.labels(
                hostname=socket.gethostname(),
                version=__version__,
                python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ).info({"platform": sys.platform, "process_id": str(process.pid)})

            self._last_system_update = current_time

            log_metrics_collection(
                self.logger,
                "system_metrics_updated",
                1.0,
                {
                    "memory_rss": memory_info.rss,
                    "cpu_percent": cpu_percent,
                    "thread_count": thread_count,
                },
            )

        except Exception as e:
            self.logger.error(f"Failed to update system metrics: {e}")

    def get_metrics(self) -> str:
        """
        Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        self.update_system_metrics()
        raw_metrics = generate_latest(self.registry).decode("utf-8")
        return self._format_numeric_values(raw_metrics)

    def _format_numeric_values(self, metrics_text: str) -> str:
        """
        Render integral values of selected metrics without scientific notation.

        Args:
            metrics_text: Raw Prometheus metrics text

        Returns:
            Formatted metrics text
        """
        formatted_lines = []

        for line in metrics_text.split("\n"):
            if line.startswith("#") or not line.strip():
                formatted_lines.append(line)
                continue

            match = re.match(r"^([^}]+})\s+(.+)$", line) or re.match(r"^([^\s]+)\s+(.+)$", line)
            if not match or not match.group(1).startswith(_INTEGER_METRICS):
                formatted_lines.append(line)
                continue

            metric_name, value = match.group(1), match.group(2)
            try:
                float_value = float(value)
            except ValueError:
                formatted_lines.append(line)
                continue

            if float_value.is_integer():
                formatted_lines.append(f"{metric_name} {int(float_value)}")
            else:
                formatted_lines.append(line)

        return "\n".join(formatted_lines)

    def get_content_type(self) -> str:
        """Get content type for metrics endpoint."""
        return CONTENT_TYPE_LATEST

    def get_registry_status(self) -> Dict[str, Any]:
        """Get Prometheus registry status for health checks."""
        metrics_count = len(list(self.registry.collect()))
        return {
            "prometheus_registry": {
                "status": "healthy",
                "metrics_count": metrics_count,
                "last_update": self._last_system_update,
            }
        }
