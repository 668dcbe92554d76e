# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for delivery transactions."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DeliveryMetrics:
    """Wrapper around the Prometheus registry used by the delivery core."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.transactions = Counter(
            "mdc_transactions_total", "Delivery transactions by outcome", ["target", "outcome"],
            registry=self.registry,
        )
        self.recipients = Counter(
            "mdc_recipients_total", "Recipients by registration status", ["target", "status"],
            registry=self.registry,
        )
        self.spooled = Counter("mdc_spooled_buffers_total", "Message bodies spooled to disk", registry=self.registry)
        self.active = Gauge("mdc_active_transactions", "Transactions currently open", registry=self.registry)

    def inc_transaction(self, target: str, outcome: str):
        """Count a finished transaction (committed, aborted, failed, partial)."""
        self.transactions.labels(target=target, outcome=outcome).inc()

    def inc_recipient(self, target: str, accepted: bool):
        """Count one recipient registration result."""
        self.recipients.labels(target=target, status="accepted" if accepted else "rejected").inc()

    def inc_spooled(self):
        """Increase the ``spooled`` counter."""
        self.spooled.inc()

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
