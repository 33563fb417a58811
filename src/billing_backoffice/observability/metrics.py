"""Prometheus metrics.

Counters for the outbox, numbering and deferred-job dispatch, exposed on
an HTTP endpoint for scraping.
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Info, start_http_server

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("billing_system", "Billing back-office information")

# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------

EVENTS_PUBLISHED = Counter(
    "billing_events_published_total",
    "Domain events handed to the event bus",
    ["name"],
)

EVENT_DELIVERY_FAILURES = Counter(
    "billing_event_delivery_failures_total",
    "Domain events the event bus refused",
    ["name"],
)

# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

DOCUMENT_NUMBERS_ISSUED = Counter(
    "billing_document_numbers_issued_total",
    "Invoice and offer numbers assigned on first send",
    ["kind"],
)

DEFERRED_JOBS = Counter(
    "billing_deferred_jobs_total",
    "Deferred jobs processed by the dispatcher",
    ["event_type", "outcome"],
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def record_event_published(name: str) -> None:
    EVENTS_PUBLISHED.labels(name=name).inc()


def record_delivery_failure(name: str) -> None:
    EVENT_DELIVERY_FAILURES.labels(name=name).inc()


def record_number_issued(kind: str) -> None:
    DOCUMENT_NUMBERS_ISSUED.labels(kind=kind).inc()


def record_job(event_type: str, outcome: str) -> None:
    DEFERRED_JOBS.labels(event_type=event_type, outcome=outcome).inc()


def start_metrics_server(port: int = 9090) -> None:
    """Start the Prometheus metrics HTTP server."""
    from billing_backoffice import __version__

    SYSTEM_INFO.info({"version": __version__})
    start_http_server(port)
    logger.info("Metrics server started on port %d", port)
