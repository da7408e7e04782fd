"""Prometheus instruments for identity lifecycle traffic."""

from __future__ import annotations

from prometheus_client import Counter

IDENTITY_OPERATIONS = Counter(
    "identity_operations_total",
    "Identity lifecycle operations by outcome.",
    ["operation", "outcome"],
)

NOTIFICATION_FAILURES = Counter(
    "identity_notification_failures_total",
    "Verification/reset notifications the provider did not accept.",
    ["kind", "surfaced"],
)
