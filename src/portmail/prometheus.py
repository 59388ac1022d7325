# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the due-job dispatcher.

All metrics use the ``pm_`` prefix.

Metrics exposed:
    - ``pm_sweeps_total``: Counter of sweeps, labeled by trigger source.
    - ``pm_jobs_sent_total``: Counter of jobs delivered.
    - ``pm_jobs_failed_total``: Counter of jobs that failed to send.
    - ``pm_claim_conflicts_total``: Counter of due jobs another sweep claimed first.
    - ``pm_attachments_missing_total``: Counter of attachments dropped because
      they could not be resolved.
    - ``pm_pending_jobs``: Gauge of jobs waiting in ``pending``.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SweepMetrics:
    """Prometheus metrics collector for the dispatcher.

    Attributes:
        registry: The CollectorRegistry holding all metrics. Each instance
            owns its registry so tests can create several.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sweeps = Counter(
            "pm_sweeps_total",
            "Total dispatcher sweeps",
            ["trigger"],
            registry=self.registry,
        )
        self.sent = Counter(
            "pm_jobs_sent_total",
            "Total jobs delivered",
            registry=self.registry,
        )
        self.failed = Counter(
            "pm_jobs_failed_total",
            "Total jobs failed",
            registry=self.registry,
        )
        self.claim_conflicts = Counter(
            "pm_claim_conflicts_total",
            "Due jobs already claimed by a concurrent sweep",
            registry=self.registry,
        )
        self.attachments_missing = Counter(
            "pm_attachments_missing_total",
            "Attachments dropped because they could not be resolved",
            registry=self.registry,
        )
        self.pending = Gauge(
            "pm_pending_jobs",
            "Jobs currently pending",
            registry=self.registry,
        )

    def inc_sweep(self, trigger: str) -> None:
        self.sweeps.labels(trigger=trigger or "manual").inc()

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_failed(self) -> None:
        self.failed.inc()

    def inc_claim_conflict(self) -> None:
        self.claim_conflicts.inc()

    def inc_attachment_missing(self, count: int = 1) -> None:
        if count > 0:
            self.attachments_missing.inc(count)

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
