"""Prometheus metrics for the transcoding engine.

Tracks job transitions, rendition throughput, lock contention and event
delivery. Exposed by the API on /metrics.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "mediaflow_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Job Metrics
# ============================================
JOB_TRANSITIONS_TOTAL = Counter(
    "transcode_job_transitions_total",
    "Job status transitions by target status",
    ["status"],
    registry=REGISTRY,
)

JOBS_IN_FLIGHT = Gauge(
    "transcode_jobs_in_flight",
    "Jobs currently being processed by this worker",
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "End-to-end processing time of one job attempt",
    ["outcome"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 3600],
    registry=REGISTRY,
)

JOBS_RECLAIMED_TOTAL = Counter(
    "transcode_jobs_reclaimed_total",
    "Stale processing jobs picked up again after their lock expired",
    registry=REGISTRY,
)


# ============================================
# Rendition Metrics
# ============================================
RENDITIONS_TOTAL = Counter(
    "transcode_renditions_total",
    "Renditions finished by profile and status",
    ["profile", "status"],
    registry=REGISTRY,
)

RENDITION_DURATION_SECONDS = Histogram(
    "transcode_rendition_duration_seconds",
    "Encode plus upload time of one rendition",
    ["profile"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
    registry=REGISTRY,
)


# ============================================
# Coordination Metrics
# ============================================
LOCK_OPERATIONS_TOTAL = Counter(
    "distributed_lock_operations_total",
    "Distributed lock operations by operation and result",
    ["operation", "result"],
    registry=REGISTRY,
)


# ============================================
# Event Metrics
# ============================================
EVENTS_PUBLISHED_TOTAL = Counter(
    "events_published_total",
    "Events published by topic and result",
    ["topic", "result"],
    registry=REGISTRY,
)

EVENTS_CONSUMED_TOTAL = Counter(
    "events_consumed_total",
    "Events handled by topic and result",
    ["topic", "result"],
    registry=REGISTRY,
)

EVENTS_DEAD_LETTERED_TOTAL = Counter(
    "events_dead_lettered_total",
    "Events moved to the dead-letter stream",
    ["topic"],
    registry=REGISTRY,
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "transcode_notification_failures_total",
    "Failed attempts to publish the transcoded event",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
