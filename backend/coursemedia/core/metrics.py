"""Prometheus metrics for the media service.

Tracks HTTP traffic, queue depth and job outcomes, and bytes streamed.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "coursemedia_app",
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

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Queue Metrics
# ============================================
QUEUE_DEPTH = Gauge(
    "job_queue_depth",
    "Number of jobs in queue by state",
    ["queue_name", "state"],
    registry=REGISTRY,
)

JOB_EVENTS_TOTAL = Counter(
    "job_events_total",
    "Job lifecycle events by queue and event type",
    ["queue_name", "event"],
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "job_duration_seconds",
    "Job processing duration in seconds",
    ["queue_name", "outcome"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

WORKER_ACTIVE_JOBS = Gauge(
    "worker_active_jobs",
    "Jobs currently held by workers",
    ["queue_name"],
    registry=REGISTRY,
)


# ============================================
# Media Metrics
# ============================================
RENDITIONS_TOTAL = Counter(
    "video_renditions_total",
    "Renditions produced by the transcoding pipeline",
    ["quality", "status"],
    registry=REGISTRY,
)

STREAM_BYTES_TOTAL = Counter(
    "stream_bytes_total",
    "Bytes sent to clients by the streaming endpoint",
    ["quality"],
    registry=REGISTRY,
)

ACTIVE_STREAMS = Gauge(
    "active_streams_total",
    "Number of currently open stream responses",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    Returns:
        bytes: Prometheus-formatted metrics
    """
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
