# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring campaign dispatch.

All metrics use the ``cds_`` prefix.

Metrics exposed:
    - ``cds_sent_total``: Recipients delivered, per tenant.
    - ``cds_failed_total``: Failed attempts, per tenant and failure category.
    - ``cds_bounced_total``: Recipients terminally bounced, per tenant.
    - ``cds_suppressed_total``: Addresses added to the suppression ledger, per reason.
    - ``cds_jobs_total``: Job runs by outcome (completed, partial, paused,
      cancelled, failed, error).
    - ``cds_rate_limited_total``: Job runs deferred by the tenant send limit.
    - ``cds_engagement_total``: Recorded opens and clicks, per tenant and event.
    - ``cds_pending_recipients``: Recipients still pending after the last run.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus metrics collector for the campaign dispatcher.

    Each instance owns a private registry so tests and multiple dispatchers
    in one process never collide on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "cds_sent_total",
            "Total delivered recipients",
            ["org_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "cds_failed_total",
            "Total failed delivery attempts",
            ["org_id", "category"],
            registry=self.registry,
        )
        self.bounced = Counter(
            "cds_bounced_total",
            "Total terminally bounced recipients",
            ["org_id"],
            registry=self.registry,
        )
        self.suppressed = Counter(
            "cds_suppressed_total",
            "Total addresses added to the suppression ledger",
            ["reason"],
            registry=self.registry,
        )
        self.jobs = Counter(
            "cds_jobs_total",
            "Total job runs by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "cds_rate_limited_total",
            "Total job runs deferred by tenant send limits",
            ["org_id"],
            registry=self.registry,
        )
        self.engagement = Counter(
            "cds_engagement_total",
            "Total recorded open and click events",
            ["org_id", "event"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "cds_pending_recipients",
            "Recipients still pending after the last run",
            registry=self.registry,
        )

    def inc_sent(self, org_id: str) -> None:
        self.sent.labels(org_id=org_id).inc()

    def inc_failed(self, org_id: str, category: str) -> None:
        self.failed.labels(org_id=org_id, category=category).inc()

    def inc_bounced(self, org_id: str) -> None:
        self.bounced.labels(org_id=org_id).inc()

    def inc_suppressed(self, reason: str) -> None:
        self.suppressed.labels(reason=reason).inc()

    def inc_job(self, outcome: str) -> None:
        self.jobs.labels(outcome=outcome).inc()

    def inc_rate_limited(self, org_id: str) -> None:
        self.rate_limited.labels(org_id=org_id).inc()

    def inc_engagement(self, org_id: str, event: str) -> None:
        self.engagement.labels(org_id=org_id, event=event).inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Render metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)
