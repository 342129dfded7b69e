# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the mailman daemon.

All metrics use the ``agentmail_`` prefix.

Metrics exposed:
    - ``agentmail_notifications_total``: Counter of delivered notifications per phase.
    - ``agentmail_notification_failures_total``: Counter of failed notifications per phase.
    - ``agentmail_dispatch_cycles_total``: Counter of dispatch cycles per trigger.
    - ``agentmail_retention_removed_total``: Counter of records removed per retention pass.
    - ``agentmail_monitoring_watching``: Gauge, 1 while filesystem watching is active.

Example:
    The daemon has no network surface; set ``metrics_file`` in config.ini to
    have the registry written in text exposition format after every cycle,
    ready for the node_exporter textfile collector::

        [mailman]
        metrics_file = /var/lib/node_exporter/agentmail.prom
"""

from __future__ import annotations

from pathlib import Path

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, write_to_textfile


class MailmanMetrics:
    """Prometheus metrics collector for the mailman daemon.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        notifications: Counter of successful notifications, labeled by phase.
        failures: Counter of failed notifications, labeled by phase.
        cycles: Counter of dispatch cycles, labeled by trigger.
        retention_removed: Counter of retention removals, labeled by kind.
        watching: Gauge set to 1 in watching mode, 0 in polling mode.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.notifications = Counter(
            "agentmail_notifications_total",
            "Total notifications delivered",
            ["phase"],
            registry=self.registry,
        )
        self.failures = Counter(
            "agentmail_notification_failures_total",
            "Total failed notification attempts",
            ["phase"],
            registry=self.registry,
        )
        self.cycles = Counter(
            "agentmail_dispatch_cycles_total",
            "Total dispatch cycles",
            ["trigger"],
            registry=self.registry,
        )
        self.retention_removed = Counter(
            "agentmail_retention_removed_total",
            "Total records removed by retention",
            ["kind"],
            registry=self.registry,
        )
        self.watching = Gauge(
            "agentmail_monitoring_watching",
            "1 while filesystem watching is active, 0 while polling",
            registry=self.registry,
        )

    def inc_notification(self, phase: str) -> None:
        """Count a delivered notification for ``phase`` (registered/stateless)."""
        self.notifications.labels(phase=phase).inc()

    def inc_failure(self, phase: str) -> None:
        self.failures.labels(phase=phase).inc()

    def inc_cycle(self, trigger: str) -> None:
        """Count a dispatch cycle for ``trigger`` (event/fallback)."""
        self.cycles.labels(trigger=trigger).inc()

    def add_removed(self, kind: str, count: int) -> None:
        if count > 0:
            self.retention_removed.labels(kind=kind).inc(count)

    def set_watching(self, watching: bool) -> None:
        self.watching.set(1 if watching else 0)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def write_textfile(self, path: Path | str) -> None:
        """Atomically write the exposition output to ``path`` (textfile collector format)."""
        write_to_textfile(str(path), self.registry)
